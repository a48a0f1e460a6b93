"""Validation and sanitization of experiment goal definitions.

Goal payloads come from the management UI and are untrusted. Every goal
edit goes through validate_and_sanitize_goals before it is persisted:

- structural checks per goal type, returned as readable messages
- deny-lists for script and protocol injection in selectors and URLs
- sanitization into a typed goal model that only carries the fields of
  its own type, so extra fields cannot be smuggled through

Each goal kind is its own pydantic model; the `Goal` union is
discriminated on `type`.
"""

import math
import re
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from src.experiments.errors import GoalValidationError


class GoalType(str, Enum):
    CLICK = "click"
    PAGEVIEW = "pageview"
    FORM_SUBMIT = "form_submit"
    CUSTOM_EVENT = "custom_event"
    SCROLL_DEPTH = "scroll_depth"
    TIME_ON_PAGE = "time_on_page"
    REVENUE = "revenue"


class UrlMatchType(str, Enum):
    EXACT = "exact"
    CONTAINS = "contains"
    REGEX = "regex"


MAX_GOALS = 10

URL_MATCH_VALUES = tuple(m.value for m in UrlMatchType)

MAX_LENGTHS = {
    "name": 100,
    "selector": 500,
    "url_pattern": 500,
    "event_name": 100,
    "value_field": 50,
    "currency": 3,
}

DANGEROUS_SELECTOR_PATTERNS = [
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"expression\(", re.IGNORECASE),
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),  # onclick=, onload=, ...
    re.compile(r"data:", re.IGNORECASE),
    re.compile(r"url\s*\(", re.IGNORECASE),
]

# Approximation of the characters a CSS selector can legally contain
SELECTOR_CHARACTERS = re.compile(r"[a-zA-Z#.\[\]=\"':\-_\s\d>+~*()^$|,]+")

DANGEROUS_URL_PATTERN = re.compile(r"javascript:|data:|<script", re.IGNORECASE)

EVENT_NAME_PATTERN = re.compile(r"[a-zA-Z][a-zA-Z0-9_-]*")

CURRENCY_PATTERN = re.compile(r"[A-Z]{3}")

DEFAULT_SCROLL_DEPTH = 50
DEFAULT_TIME_ON_PAGE = 30
MAX_TIME_ON_PAGE = 3600


# ---------------------------------------------------------------------------
# Field validators. Each returns an error message, or None when valid.
# ---------------------------------------------------------------------------

def validate_selector(selector: Any) -> str | None:
    if not selector or not isinstance(selector, str):
        return "Selector is required"
    if len(selector) > MAX_LENGTHS["selector"]:
        return f"Selector exceeds {MAX_LENGTHS['selector']} characters"
    for pattern in DANGEROUS_SELECTOR_PATTERNS:
        if pattern.search(selector):
            return "Selector contains disallowed pattern"
    if not SELECTOR_CHARACTERS.fullmatch(selector):
        return "Selector contains invalid characters"
    return None


def validate_url_pattern(pattern: Any, match_type: str = UrlMatchType.CONTAINS.value) -> str | None:
    if not pattern or not isinstance(pattern, str):
        return "URL pattern is required"
    if len(pattern) > MAX_LENGTHS["url_pattern"]:
        return f"URL pattern exceeds {MAX_LENGTHS['url_pattern']} characters"
    if DANGEROUS_URL_PATTERN.search(pattern):
        return "URL pattern contains disallowed protocol"
    if match_type == UrlMatchType.REGEX.value:
        try:
            re.compile(pattern)
        except re.error:
            return "Invalid regex pattern"
    return None


def validate_event_name(name: Any) -> str | None:
    if not name or not isinstance(name, str):
        return "Event name is required"
    if len(name) > MAX_LENGTHS["event_name"]:
        return f"Event name exceeds {MAX_LENGTHS['event_name']} characters"
    if not EVENT_NAME_PATTERN.fullmatch(name):
        return (
            "Event name must start with letter and contain only "
            "alphanumeric, underscore, hyphen"
        )
    return None


def _is_number(value: Any) -> bool:
    # JSON ints can exceed float range, so only floats go through isfinite
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and math.isfinite(value)


def _clamp(value: Any, low: float, high: float, default: float) -> float:
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            value = default
    if not _is_number(value):
        value = default
    return min(high, max(low, value))


def _truncate(value: Any, field_name: str) -> str:
    return str(value)[:MAX_LENGTHS[field_name]]


# ---------------------------------------------------------------------------
# Goal models
# ---------------------------------------------------------------------------

class BaseGoal(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: ClassVar[GoalType]

    id: str
    name: str = Field(max_length=100)
    is_primary: bool = False

    @classmethod
    def check(cls, raw: dict) -> list[str]:
        """Type-specific structural checks on an untrusted payload."""
        return []

    @classmethod
    def sanitized_fields(cls, raw: dict) -> dict:
        """Type-specific fields, truncated and clamped."""
        return {}

    @classmethod
    def from_untrusted(cls, raw: dict) -> "BaseGoal":
        return cls(
            id=str(raw.get("id") or _generate_goal_id()),
            name=_truncate(raw.get("name") or "Untitled Goal", "name"),
            is_primary=bool(raw.get("is_primary")),
            **cls.sanitized_fields(raw),
        )


class _ElementGoal(BaseGoal):
    selector: str | None = None
    url_pattern: str | None = None

    @classmethod
    def check(cls, raw):
        errors = []
        if raw.get("selector"):
            error = validate_selector(raw["selector"])
            if error:
                errors.append(error)
        if raw.get("url_pattern"):
            error = validate_url_pattern(raw["url_pattern"])
            if error:
                errors.append(error)
        return errors

    @classmethod
    def sanitized_fields(cls, raw):
        fields = {}
        if raw.get("selector"):
            fields["selector"] = _truncate(raw["selector"], "selector")
        if raw.get("url_pattern"):
            fields["url_pattern"] = _truncate(raw["url_pattern"], "url_pattern")
        return fields


class ClickGoal(_ElementGoal):
    kind: ClassVar[GoalType] = GoalType.CLICK
    type: Literal["click"] = "click"


class FormSubmitGoal(_ElementGoal):
    kind: ClassVar[GoalType] = GoalType.FORM_SUBMIT
    type: Literal["form_submit"] = "form_submit"


class PageviewGoal(BaseGoal):
    kind: ClassVar[GoalType] = GoalType.PAGEVIEW
    type: Literal["pageview"] = "pageview"
    url_pattern: str = "/"
    url_match: Literal["exact", "contains", "regex"] = "contains"

    @classmethod
    def check(cls, raw):
        if not raw.get("url_pattern"):
            return ["URL pattern is required for pageview goals"]
        errors = []
        url_match = raw.get("url_match") or UrlMatchType.CONTAINS.value
        if url_match not in URL_MATCH_VALUES:
            errors.append(
                "Invalid url_match type. Must be one of: "
                + ", ".join(URL_MATCH_VALUES)
            )
        error = validate_url_pattern(raw["url_pattern"], url_match)
        if error:
            errors.append(error)
        return errors

    @classmethod
    def sanitized_fields(cls, raw):
        url_match = raw.get("url_match")
        if url_match not in URL_MATCH_VALUES:
            url_match = UrlMatchType.CONTAINS.value
        return {
            "url_pattern": _truncate(raw.get("url_pattern") or "/", "url_pattern"),
            "url_match": url_match,
        }


class CustomEventGoal(BaseGoal):
    kind: ClassVar[GoalType] = GoalType.CUSTOM_EVENT
    type: Literal["custom_event"] = "custom_event"
    event_name: str = "conversion"

    @classmethod
    def check(cls, raw):
        if not raw.get("event_name"):
            return ["Event name is required for custom_event goals"]
        error = validate_event_name(raw["event_name"])
        return [error] if error else []

    @classmethod
    def sanitized_fields(cls, raw):
        return {"event_name": _truncate(raw.get("event_name") or "conversion", "event_name")}


class RevenueGoal(BaseGoal):
    kind: ClassVar[GoalType] = GoalType.REVENUE
    type: Literal["revenue"] = "revenue"
    event_name: str = "conversion"
    track_value: bool = False
    value_field: str | None = None
    currency: str | None = None

    @classmethod
    def check(cls, raw):
        errors = []
        if not raw.get("event_name"):
            errors.append("Event name is required for revenue goals")
        else:
            error = validate_event_name(raw["event_name"])
            if error:
                errors.append(error)
        value_field = raw.get("value_field")
        if value_field and (
            not isinstance(value_field, str) or len(value_field) > MAX_LENGTHS["value_field"]
        ):
            errors.append(f"Value field name exceeds {MAX_LENGTHS['value_field']} characters")
        currency = raw.get("currency")
        if currency and (not isinstance(currency, str) or not CURRENCY_PATTERN.fullmatch(currency)):
            errors.append("Currency must be a 3-letter ISO code (e.g., USD, EUR)")
        return errors

    @classmethod
    def sanitized_fields(cls, raw):
        fields = {
            "event_name": _truncate(raw.get("event_name") or "conversion", "event_name"),
            "track_value": bool(raw.get("track_value")),
        }
        if raw.get("value_field"):
            fields["value_field"] = _truncate(raw["value_field"], "value_field")
        if raw.get("currency"):
            fields["currency"] = str(raw["currency"]).upper()[:MAX_LENGTHS["currency"]]
        return fields


class ScrollDepthGoal(BaseGoal):
    kind: ClassVar[GoalType] = GoalType.SCROLL_DEPTH
    type: Literal["scroll_depth"] = "scroll_depth"
    depth_percentage: float = DEFAULT_SCROLL_DEPTH

    @classmethod
    def check(cls, raw):
        depth = raw.get("depth_percentage")
        if not _is_number(depth) or not 0 <= depth <= 100:
            return ["Scroll depth must be a number between 0 and 100"]
        return []

    @classmethod
    def sanitized_fields(cls, raw):
        return {
            "depth_percentage": _clamp(raw.get("depth_percentage"), 0, 100, DEFAULT_SCROLL_DEPTH),
        }


class TimeOnPageGoal(BaseGoal):
    kind: ClassVar[GoalType] = GoalType.TIME_ON_PAGE
    type: Literal["time_on_page"] = "time_on_page"
    seconds: int = DEFAULT_TIME_ON_PAGE

    @classmethod
    def check(cls, raw):
        seconds = raw.get("seconds")
        if (
            not _is_number(seconds)
            or seconds != int(seconds)
            or not 1 <= seconds <= MAX_TIME_ON_PAGE
        ):
            return [f"Time on page must be between 1 and {MAX_TIME_ON_PAGE} seconds"]
        return []

    @classmethod
    def sanitized_fields(cls, raw):
        seconds = _clamp(raw.get("seconds"), 1, MAX_TIME_ON_PAGE, DEFAULT_TIME_ON_PAGE)
        return {"seconds": int(seconds)}


Goal = Annotated[
    Union[
        ClickGoal,
        PageviewGoal,
        FormSubmitGoal,
        CustomEventGoal,
        ScrollDepthGoal,
        TimeOnPageGoal,
        RevenueGoal,
    ],
    Field(discriminator="type"),
]

GOAL_MODELS: dict[GoalType, type[BaseGoal]] = {
    model.kind: model
    for model in (
        ClickGoal,
        PageviewGoal,
        FormSubmitGoal,
        CustomEventGoal,
        ScrollDepthGoal,
        TimeOnPageGoal,
        RevenueGoal,
    )
}

_missing = set(GoalType) - set(GOAL_MODELS)
if _missing:
    raise RuntimeError(f"No goal model for: {sorted(t.value for t in _missing)}")

_GOAL_LIST_ADAPTER = TypeAdapter(list[Goal])


def _generate_goal_id() -> str:
    return f"goal_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


def _parse_goal_type(value: Any) -> GoalType | None:
    try:
        return GoalType(value)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def validate_goal(goal: Any) -> list[str]:
    """Return every problem with an untrusted goal payload (empty = valid)."""
    if not isinstance(goal, dict):
        return ["Goal must be an object"]

    errors = []
    name = goal.get("name")
    if not name or not isinstance(name, str) or len(name) > MAX_LENGTHS["name"]:
        errors.append("Goal name is required and must be under 100 characters")

    goal_type = _parse_goal_type(goal.get("type"))
    if goal_type is None:
        errors.append(
            "Invalid goal type. Must be one of: " + ", ".join(t.value for t in GoalType)
        )

    if not isinstance(goal.get("is_primary"), bool):
        errors.append("is_primary must be a boolean")

    if goal_type is not None:
        errors.extend(GOAL_MODELS[goal_type].check(goal))
    return errors


def sanitize_goal(goal: Any) -> BaseGoal:
    """Build the canonical goal model for a payload.

    Unknown types resolve to custom_event. Only the fields of the resolved
    type are kept.
    """
    raw = goal if isinstance(goal, dict) else {}
    goal_type = _parse_goal_type(raw.get("type")) or GoalType.CUSTOM_EVENT
    return GOAL_MODELS[goal_type].from_untrusted(raw)


@dataclass
class GoalBatchResult:
    goals: list[BaseGoal] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    has_primary: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        if self.errors:
            raise GoalValidationError(self.errors)


def validate_and_sanitize_goals(goals: Any) -> GoalBatchResult:
    """Validate a whole goal list and sanitize the valid entries.

    Exactly one goal in the result is primary: the first one marked so,
    or the first goal when none is.
    """
    if not isinstance(goals, list):
        return GoalBatchResult(errors=["Goals must be an array"])
    if len(goals) > MAX_GOALS:
        return GoalBatchResult(errors=[f"Maximum {MAX_GOALS} goals per experiment"])

    errors = []
    sanitized: list[BaseGoal] = []
    for index, goal in enumerate(goals, start=1):
        goal_errors = validate_goal(goal)
        if goal_errors:
            errors.append(f"Goal {index}: {', '.join(goal_errors)}")
        else:
            sanitized.append(sanitize_goal(goal))

    primary_index = next((i for i, g in enumerate(sanitized) if g.is_primary), 0)
    sanitized = [
        g.model_copy(update={"is_primary": i == primary_index})
        if g.is_primary != (i == primary_index) else g
        for i, g in enumerate(sanitized)
    ]

    return GoalBatchResult(goals=sanitized, errors=errors, has_primary=bool(sanitized))


def parse_goals(data: list[dict]) -> list[BaseGoal]:
    """Load persisted, already sanitized goals into their typed models."""
    return _GOAL_LIST_ADAPTER.validate_python(data)
