"""Run bookkeeping - last successful run, per-source cursors, last error.

Session adapters read the cursors to avoid re-reading sessions that were
already analyzed.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from .errors import CorruptStoreError, WriteError
from .models import RunState, utc_now
from .records import RecordStore

logger = logging.getLogger(__name__)


class RunStateStore:
    """Persists a single RunState record."""

    def __init__(self, store: RecordStore[RunState], clock: Callable[[], datetime] = utc_now):
        self._store = store
        self._clock = clock
        self._state: RunState | None = None

    @property
    def _current(self) -> RunState:
        if self._state is None:
            records = self._store.load()
            self._state = records[0] if records else RunState()
        return self._state

    def _update(self, **changes: Any) -> RunState:
        # Validated so caller-supplied timestamps are normalized to UTC
        updated = RunState.model_validate({**self._current.model_dump(), **changes})
        self._store.save([updated])
        self._state = updated
        return updated

    def get(self) -> RunState:
        return self._current.model_copy(deep=True)

    def record_run_start(self, ts: datetime | None = None) -> None:
        self._update(last_run_started_at=ts or self._clock())

    def record_run_success(self, ts: datetime | None = None) -> None:
        """Mark a run finished and clear any previous error."""
        self._update(last_run_at=ts or self._clock(), last_error=None)

    def record_error(self, message: str) -> None:
        """Remember the last run error. Never raises.

        Losing the error record is preferable to crashing a run that is
        already failing.
        """
        try:
            self._update(last_error=message)
        except (CorruptStoreError, WriteError) as e:
            logger.warning(f"Could not record run error {message!r}: {e}")

    def get_cursor(self, source_id: str) -> datetime | None:
        return self._current.cursors.get(source_id)

    def set_cursor(self, source_id: str, ts: datetime | None) -> None:
        cursors = dict(self._current.cursors)
        cursors[source_id] = ts
        self._update(cursors=cursors)
