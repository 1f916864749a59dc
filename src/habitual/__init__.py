"""Habitual - learn recurring coding habits from AI assistant sessions.

Public API:
- ObservationStore: captured patterns with semantic deduplication
- MemoryHierarchy: long-term memory and core promotion
- RunStateStore: run bookkeeping and per-source cursors
- RecordStore: atomic JSON persistence used by all of the above
"""

from .errors import (
    CorruptStoreError,
    HabitualError,
    InvalidTransitionError,
    NotEligibleError,
    NotFoundError,
    PartialPromotionError,
    WriteError,
)
from .hierarchy import MemoryHierarchy, format_core_entry
from .models import LongTermMemory, Observation, PromotionThresholds, RunState, SourceRef
from .observations import ObservationStore
from .records import RecordStore
from .run_state import RunStateStore

__version__ = "0.1.0"

__all__ = [
    "CorruptStoreError",
    "HabitualError",
    "InvalidTransitionError",
    "LongTermMemory",
    "MemoryHierarchy",
    "NotEligibleError",
    "NotFoundError",
    "Observation",
    "ObservationStore",
    "PartialPromotionError",
    "PromotionThresholds",
    "RecordStore",
    "RunState",
    "RunStateStore",
    "SourceRef",
    "WriteError",
    "format_core_entry",
]
