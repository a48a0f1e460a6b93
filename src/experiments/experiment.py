"""Experiment definitions as read from the persistence layer.

An experiment belongs to a site, has an ordered list of variants with
integer traffic weights, and includes only a percentage of the site's
traffic. Weights are relative shares and need not sum to 100.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ExperimentStatus(str, Enum):
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


@dataclass(frozen=True)
class Variant:
    id: str
    name: str
    weight: int = 50  # Relative traffic share, compared against sibling weights
    description: str | None = None

    def __post_init__(self):
        if isinstance(self.weight, bool) or not isinstance(self.weight, int):
            raise ValueError(f"Variant {self.id} weight must be an integer, got {self.weight!r}")
        if self.weight < 0:
            raise ValueError(f"Variant {self.id} weight must be non-negative, got {self.weight}")


@dataclass(frozen=True)
class Experiment:
    id: str
    site_id: str
    name: str
    status: ExperimentStatus = ExperimentStatus.DRAFT
    variants: tuple[Variant, ...] = ()
    # Share of the site's visitors (0-100) that enters the experiment at all
    traffic_percentage: int = 100
    goals: tuple[dict, ...] = ()
    target_urls: tuple[str, ...] = ()
    created_at: str | None = None
    updated_at: str | None = None
    started_at: str | None = None
    ended_at: str | None = None
    description: str | None = None
    _equal_weights: bool = field(init=False, repr=False, compare=False)
    _total_weight: int = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if not 0 <= self.traffic_percentage <= 100:
            raise ValueError(
                f"traffic_percentage must be between 0 and 100, got {self.traffic_percentage}"
            )
        ids = [v.id for v in self.variants]
        if len(ids) != len(set(ids)):
            raise ValueError("Variant ids must be unique")
        # Read on every assignment
        weights = {v.weight for v in self.variants}
        object.__setattr__(self, "_equal_weights", len(weights) <= 1)
        object.__setattr__(self, "_total_weight", sum(v.weight for v in self.variants))

    @property
    def is_running(self) -> bool:
        return self.status == ExperimentStatus.RUNNING

    @property
    def has_equal_weights(self) -> bool:
        return self._equal_weights

    @property
    def total_weight(self) -> int:
        return self._total_weight

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "Experiment":
        """Build an experiment from a persistence row (JSON-shaped dict)."""
        variants = tuple(
            Variant(
                id=str(v["id"]),
                name=str(v.get("name", v["id"])),
                weight=int(v.get("weight", 50)),
                description=v.get("description"),
            )
            for v in row.get("variants") or ()
        )
        return cls(
            id=str(row["id"]),
            site_id=str(row["site_id"]),
            name=str(row.get("name", "")),
            status=ExperimentStatus(row.get("status", ExperimentStatus.DRAFT.value)),
            variants=variants,
            traffic_percentage=int(row.get("traffic_percentage", 100)),
            goals=tuple(row.get("goals") or ()),
            target_urls=tuple(row.get("target_urls") or ()),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            started_at=row.get("started_at"),
            ended_at=row.get("ended_at"),
            description=row.get("description"),
        )
