"""Memory hierarchy - promotion from observations to long-term and core memory.

    Observation (approved) -> LongTermMemory (active) -> core memory files

Long-term memories follow their own one-way state machine:

    active --promote_to_core (every requested target written)--> promoted_to_core
    active --reject--> rejected

Core promotion is only possible once a memory has been seen often enough
and has spent long enough in long-term memory. The call to
``promote_to_core`` is itself the human approval.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Mapping, Sequence

from .errors import (
    InvalidTransitionError,
    NotEligibleError,
    NotFoundError,
    PartialPromotionError,
    WriteError,
)
from .models import (
    LongTermMemory,
    LongTermStatus,
    MemoryCounts,
    Observation,
    PromotionThresholds,
    SourceRef,
    utc_now,
)
from .observations import ObservationStore
from .records import RecordStore
from .timeutil import days_between
from .writers import CoreMemoryWriter

logger = logging.getLogger(__name__)


def format_core_entry(memory: LongTermMemory) -> str:
    """Plain-text block written to core memory targets."""
    lines = [
        f"## {memory.text}",
        "",
        f"- Count: {memory.count}",
        f"- First seen: {memory.first_seen_at.date().isoformat()}",
        f"- Last seen: {memory.last_seen_at.date().isoformat()}",
        f"- Sources: {len(memory.source_refs)}",
        "",
    ]
    return "\n".join(lines)


class MemoryHierarchy:
    """Owns long-term memories and decides core promotion."""

    def __init__(
        self,
        observations: ObservationStore,
        store: RecordStore[LongTermMemory],
        writers: Mapping[str, CoreMemoryWriter] | None = None,
        thresholds: PromotionThresholds | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the hierarchy.

        Args:
            observations: Store holding the observations that seed memories
            store: Backing record store for long-term memories
            writers: Core memory writers keyed by target id
            thresholds: Default thresholds for eligibility checks
            clock: Source of "now" (injectable for tests)
        """
        self._observations = observations
        self._store = store
        self._writers = dict(writers or {})
        self.thresholds = thresholds or PromotionThresholds()
        self._clock = clock
        self._records: dict[str, LongTermMemory] | None = None

    @property
    def _memories(self) -> dict[str, LongTermMemory]:
        if self._records is None:
            self._records = {m.id: m for m in self._store.load()}
        return self._records

    def _commit(self, memory: LongTermMemory) -> None:
        """Save with ``memory`` inserted or replaced; no-op in memory on failure."""
        updated = dict(self._memories)
        updated[memory.id] = memory
        self._store.save(list(updated.values()))
        self._records = updated

    # ─────────────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────────────

    def get(self, memory_id: str) -> LongTermMemory:
        """Get a long-term memory by id.

        Raises:
            NotFoundError: If no memory has this id
        """
        try:
            return self._memories[memory_id]
        except KeyError:
            raise NotFoundError("Long-term memory", memory_id) from None

    def list_all(self) -> list[LongTermMemory]:
        return list(self._memories.values())

    def list_by_status(self, status: LongTermStatus) -> list[LongTermMemory]:
        return [m for m in self._memories.values() if m.status == status]

    def find_by_observation(self, observation_id: str) -> LongTermMemory | None:
        """The memory seeded by ``observation_id``, if any."""
        for memory in self._memories.values():
            if memory.observation_id == observation_id:
                return memory
        return None

    def counts(self) -> MemoryCounts:
        return MemoryCounts(
            pending_observations=len(self._observations.list_by_status("pending")),
            active_long_term=len(self.list_by_status("active")),
            promoted_to_core=len(self.list_by_status("promoted_to_core")),
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Observation -> long-term
    # ─────────────────────────────────────────────────────────────────────────

    def promote_to_long_term(self, observation: Observation) -> LongTermMemory:
        """Create the long-term memory for an approved observation.

        Idempotent: a second call for the same observation returns the
        memory created by the first.

        Raises:
            NotFoundError: If the observation is not in the store
            InvalidTransitionError: If the observation is not approved
        """
        existing = self.find_by_observation(observation.id)
        if existing is not None:
            logger.debug(f"Observation {observation.id} already promoted as {existing.id}")
            return existing

        current = self._observations.get(observation.id)
        if current.status != "approved":
            raise InvalidTransitionError(current.id, current.status, "promote to long-term")

        memory = LongTermMemory(
            observation_id=current.id,
            text=current.text,
            count=current.count,
            source_refs=set(current.source_refs),
            category=current.category,
            first_seen_at=current.first_seen_at,
            last_seen_at=current.last_seen_at,
            promoted_to_long_term_at=self._clock(),
            status="active",
        )
        self._commit(memory)
        logger.info(f"Promoted observation {current.id} to long-term memory {memory.id}")
        return memory

    def reinforce(self, memory_id: str, source_ref: SourceRef) -> LongTermMemory:
        """Record another sighting of an active long-term memory."""
        memory = self.get(memory_id)
        if memory.status != "active":
            raise InvalidTransitionError(memory_id, memory.status, "reinforce")

        now = self._clock()
        updated = memory.model_copy(update={
            "count": memory.count + 1,
            "last_seen_at": max(memory.last_seen_at, now),
            "source_refs": memory.source_refs | {source_ref},
        })
        self._commit(updated)
        return updated

    # ─────────────────────────────────────────────────────────────────────────
    # Long-term -> core
    # ─────────────────────────────────────────────────────────────────────────

    def _ineligibility_reason(
        self,
        memory: LongTermMemory,
        thresholds: PromotionThresholds,
        now: datetime,
    ) -> str | None:
        if memory.status != "active":
            return f"status is '{memory.status}'"
        if memory.count < thresholds.min_count_for_core:
            return f"count too low: {memory.count}/{thresholds.min_count_for_core}"
        waited = now - memory.promoted_to_long_term_at
        if waited < timedelta(days=thresholds.min_days_in_long_term):
            days = days_between(memory.promoted_to_long_term_at, now)
            return f"not enough time in long-term: {days:.1f}/{thresholds.min_days_in_long_term} days"
        return None

    def is_promotable(
        self,
        memory: LongTermMemory,
        thresholds: PromotionThresholds | None = None,
    ) -> bool:
        """Whether ``memory`` currently qualifies for core promotion."""
        reason = self._ineligibility_reason(memory, thresholds or self.thresholds, self._clock())
        return reason is None

    def list_promotable(self, thresholds: PromotionThresholds | None = None) -> list[LongTermMemory]:
        """Active memories that meet the core thresholds.

        Sorted by count (highest first), then longest waiting first.
        """
        thresholds = thresholds or self.thresholds
        now = self._clock()
        eligible = [
            m for m in self._memories.values()
            if self._ineligibility_reason(m, thresholds, now) is None
        ]
        return sorted(eligible, key=lambda m: (-m.count, m.promoted_to_long_term_at))

    def promote_to_core(
        self,
        memory_id: str,
        targets: Sequence[str] | None = None,
        writers: Mapping[str, CoreMemoryWriter] | None = None,
        thresholds: PromotionThresholds | None = None,
    ) -> LongTermMemory:
        """Write a memory to core memory targets and mark it promoted.

        Eligibility is re-checked at call time. Targets that already
        accepted this memory in an earlier, partially failed call are not
        written again, so a retry with only the failed targets is safe.

        Args:
            memory_id: Long-term memory to promote
            targets: Target ids to write (default: every configured writer)
            writers: Overrides the hierarchy's writers for this call
            thresholds: Eligibility thresholds, as passed to ``list_promotable``

        Returns:
            The memory, now ``promoted_to_core``.

        Raises:
            NotFoundError: Unknown memory id
            InvalidTransitionError: Memory is not active
            NotEligibleError: Thresholds not met yet
            ValueError: No targets requested
            PartialPromotionError: At least one target failed; the memory
                stays active and successful targets are remembered
            WriteError: Saving the result failed. Nothing is recorded, so a
                retry must request every target again (targets written by
                this call may receive the entry twice)
        """
        memory = self.get(memory_id)
        if memory.status != "active":
            raise InvalidTransitionError(memory_id, memory.status, "promote to core")

        now = self._clock()
        reason = self._ineligibility_reason(memory, thresholds or self.thresholds, now)
        if reason is not None:
            raise NotEligibleError(memory_id, reason)

        writers = self._writers if writers is None else dict(writers)
        requested = list(dict.fromkeys(sorted(writers) if targets is None else targets))
        if not requested:
            raise ValueError("No core memory targets requested")

        entry = format_core_entry(memory)
        delivered = set(memory.delivered_targets)
        failed: dict[str, str] = {}

        for target in requested:
            if target in delivered:
                logger.debug(f"{memory_id} already written to {target}, skipping")
                continue
            writer = writers.get(target)
            if writer is None:
                failed[target] = "no writer configured"
                continue
            try:
                writer.append(target, entry)
            except Exception as e:
                # Writers are external; a failure only affects this target.
                logger.error(f"Writing {memory_id} to {target} failed: {e!r}")
                failed[target] = str(e) or type(e).__name__
                continue
            delivered.add(target)

        succeeded = [t for t in requested if t in delivered]

        if failed:
            progressed = memory.model_copy(update={"delivered_targets": delivered})
            if delivered != memory.delivered_targets:
                try:
                    self._commit(progressed)
                except WriteError:
                    logger.error(f"Could not record partial promotion of {memory_id} (written to {succeeded})")
                    raise
            raise PartialPromotionError(memory_id, succeeded, failed)

        promoted = memory.model_copy(update={
            "status": "promoted_to_core",
            "delivered_targets": delivered,
            "core_targets": set(delivered),
            "promoted_to_core_at": now,
        })
        self._commit(promoted)
        logger.info(f"Promoted {memory_id} to core memory: {', '.join(sorted(delivered))}")
        return promoted

    def reject(self, memory_id: str) -> LongTermMemory:
        """Reject an active memory for core promotion (terminal)."""
        memory = self.get(memory_id)
        if memory.status != "active":
            raise InvalidTransitionError(memory_id, memory.status, "reject")

        rejected = memory.model_copy(update={"status": "rejected", "rejected_at": self._clock()})
        self._commit(rejected)
        logger.info(f"Rejected long-term memory {memory_id}")
        return rejected
