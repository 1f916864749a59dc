"""Core data models for the memory hierarchy.

Uses Pydantic v2 for validation, ULID for sortable unique IDs.
"""

from datetime import datetime, timezone
from typing import Annotated, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_serializer
from ulid import ULID


def generate_id() -> str:
    """Generate a ULID (sortable, unique identifier)."""
    return str(ULID())


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    # Naive timestamps from session adapters are taken to be UTC
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class SourceRef(BaseModel):
    """Identifies the session an observation was extracted from."""

    model_config = ConfigDict(frozen=True)

    source_id: str    # session ID
    tool_name: str    # "claude-code", "opencode", ...
    timestamp: UtcDatetime

    def sort_key(self) -> tuple:
        return (self.timestamp, self.tool_name, self.source_id)


def _sorted_refs(refs: set[SourceRef]) -> list[dict]:
    return [r.model_dump(mode="json") for r in sorted(refs, key=SourceRef.sort_key)]


ObservationStatus = Literal["pending", "approved", "denied"]

ObservationCategory = Literal[
    "preference",
    "pattern",
    "workflow",
    "tool-choice",
    "style",
    "other",
]


class Observation(BaseModel):
    """A behavioral pattern captured from one or more sessions."""

    id: str = Field(default_factory=generate_id)
    text: str = Field(min_length=1)
    count: int = Field(default=1, ge=1)
    source_refs: set[SourceRef] = Field(default_factory=set)
    first_seen_at: UtcDatetime = Field(default_factory=utc_now)
    last_seen_at: UtcDatetime = Field(default_factory=utc_now)
    status: ObservationStatus = "pending"
    category: ObservationCategory | None = None

    @field_serializer("source_refs")
    def _serialize_refs(self, refs: set[SourceRef]) -> list[dict]:
        return _sorted_refs(refs)


LongTermStatus = Literal["active", "promoted_to_core", "rejected"]


class LongTermMemory(BaseModel):
    """An approved observation tracked for promotion into core memory.

    Text, count and source refs are copied from the observation when it is
    promoted and evolve independently afterwards.
    """

    id: str = Field(default_factory=generate_id)
    observation_id: str
    text: str = Field(min_length=1)
    count: int = Field(default=1, ge=1)
    source_refs: set[SourceRef] = Field(default_factory=set)
    category: ObservationCategory | None = None
    first_seen_at: UtcDatetime
    last_seen_at: UtcDatetime
    promoted_to_long_term_at: UtcDatetime = Field(default_factory=utc_now)
    status: LongTermStatus = "active"

    # Targets whose writer already accepted this entry
    delivered_targets: set[str] = Field(default_factory=set)
    # Only populated once every requested target succeeded
    core_targets: set[str] = Field(default_factory=set)
    promoted_to_core_at: UtcDatetime | None = None
    rejected_at: UtcDatetime | None = None

    @field_serializer("source_refs")
    def _serialize_refs(self, refs: set[SourceRef]) -> list[dict]:
        return _sorted_refs(refs)

    @field_serializer("delivered_targets", "core_targets")
    def _serialize_targets(self, targets: set[str]) -> list[str]:
        return sorted(targets)  # deterministic output


class PromotionThresholds(BaseModel):
    """Promotion thresholds, fixed for the lifetime of a run."""

    model_config = ConfigDict(frozen=True)

    min_count_to_long_term: int = Field(default=2, ge=1)
    min_count_for_core: int = Field(default=3, ge=1)
    min_days_in_long_term: float = Field(default=7, ge=0)


class RunState(BaseModel):
    """Bookkeeping for batch runs, used to bound session re-reads."""

    last_run_at: UtcDatetime | None = None
    last_run_started_at: UtcDatetime | None = None
    cursors: dict[str, UtcDatetime | None] = Field(default_factory=dict)
    last_error: str | None = None


class MemoryCounts(BaseModel):
    """Aggregate counts across the hierarchy, for status displays."""

    pending_observations: int = 0
    active_long_term: int = 0
    promoted_to_core: int = 0
