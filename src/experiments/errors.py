"""Exceptions raised by the experimentation engine."""


class ExperimentEngineError(Exception):
    """Base class for engine errors."""


class EditorSecretMissingError(ExperimentEngineError):
    """No signing secret is configured for editor URLs."""


class GoalValidationError(ExperimentEngineError):
    """A goal batch failed validation and must be rejected as a whole."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid goals")


class ResultsUnavailableError(ExperimentEngineError):
    """Per-variant counts could not be fetched from the analytics store."""

    def __init__(self, site_id: str, experiment_id: str):
        self.site_id = site_id
        self.experiment_id = experiment_id
        super().__init__(
            f"Variant counts unavailable for experiment {experiment_id} on site {site_id}"
        )
