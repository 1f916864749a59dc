"""Observation store - CRUD and semantic deduplication of observations.

Observations move through a one-way state machine:

    pending --approve--> approved   (then seeds a long-term memory)
    pending --deny-----> denied     (kept on disk for audit)

Every mutation is applied to a copy of the collection and only becomes
visible in memory after the copy has been saved, so a failed write leaves
both the file and the in-memory view at their previous state.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Iterable, Literal, get_args

from .errors import InvalidTransitionError, NotFoundError
from .models import (
    Observation,
    ObservationCategory,
    ObservationStatus,
    PromotionThresholds,
    SourceRef,
    as_utc,
    utc_now,
)
from .records import RecordStore
from .similarity import SimilarityOracle

logger = logging.getLogger(__name__)

DateField = Literal["first_seen_at", "last_seen_at"]
SortField = Literal["count", "first_seen_at", "last_seen_at", "text"]


class ObservationStore:
    """Authoritative collection of observations.

    Single-writer: one process owns the backing file for the duration of a
    run. The file is read once, on first access.
    """

    def __init__(
        self,
        store: RecordStore[Observation],
        oracle: SimilarityOracle | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize observation store.

        Args:
            store: Backing record store
            oracle: Default similarity oracle for ``submit``
            clock: Source of "now" (injectable for tests)
        """
        self._store = store
        self._oracle = oracle
        self._clock = clock
        self._records: dict[str, Observation] | None = None

    @property
    def _observations(self) -> dict[str, Observation]:
        if self._records is None:
            self._records = {obs.id: obs for obs in self._store.load()}
        return self._records

    def _commit(self, updated: dict[str, Observation]) -> None:
        self._store.save(list(updated.values()))
        self._records = updated

    # ─────────────────────────────────────────────────────────────────────────
    # Submission and deduplication
    # ─────────────────────────────────────────────────────────────────────────

    def submit(
        self,
        text: str,
        source_ref: SourceRef,
        oracle: SimilarityOracle | None = None,
        category: ObservationCategory | None = None,
    ) -> Observation:
        """Record a candidate pattern, merging it into an existing one if similar.

        Existing non-denied observations are compared oldest first and the
        first one the oracle calls similar absorbs the candidate (count +1,
        last seen bumped, source ref added). Otherwise a new pending
        observation is created.

        An approved observation that matches absorbs the candidate without
        being modified; callers that see an approved result should reinforce
        the corresponding long-term memory instead.

        Args:
            text: Pattern description
            source_ref: Session the pattern was extracted from
            oracle: Overrides the store's default oracle for this call
            category: Category for a newly created observation

        Returns:
            The matched or newly created observation.

        Raises:
            ValueError: If text is empty or no oracle is available
            WriteError: If saving fails (nothing is changed)
        """
        oracle = self._resolve_oracle(oracle)
        updated = dict(self._observations)
        observation = self._absorb(updated, text, source_ref, oracle, category, self._clock())
        self._commit(updated)
        return observation

    def submit_batch(
        self,
        candidates: Iterable[tuple[str, SourceRef]],
        oracle: SimilarityOracle | None = None,
    ) -> list[Observation]:
        """Submit several candidates and save once.

        Candidates later in the batch can merge into observations created
        earlier in the same batch. If the save fails, none of the batch is
        applied.
        """
        oracle = self._resolve_oracle(oracle)
        now = self._clock()
        updated = dict(self._observations)
        results = [
            self._absorb(updated, text, ref, oracle, None, now) for text, ref in candidates
        ]
        if results:
            self._commit(updated)
        return [updated[obs.id] for obs in results]

    def _resolve_oracle(self, oracle: SimilarityOracle | None) -> SimilarityOracle:
        oracle = oracle or self._oracle
        if oracle is None:
            raise ValueError("No similarity oracle configured")
        return oracle

    def _absorb(
        self,
        records: dict[str, Observation],
        text: str,
        source_ref: SourceRef,
        oracle: SimilarityOracle,
        category: ObservationCategory | None,
        now: datetime,
    ) -> Observation:
        """Merge or insert one candidate into ``records`` (mutates the dict)."""
        text = text.strip()
        if not text:
            raise ValueError("Observation text must not be empty")

        match = self._find_match(records, text, oracle)
        if match is not None:
            if match.status == "approved":
                logger.info(f"Candidate matches approved observation {match.id}, left unchanged")
                return match

            merged = match.model_copy(update={
                "count": match.count + 1,
                "last_seen_at": max(match.last_seen_at, now),
                "source_refs": match.source_refs | {source_ref},
            })
            records[merged.id] = merged
            logger.info(f"Deduplicated into {merged.id} (count={merged.count})")
            return merged

        observation = Observation(
            text=text,
            count=1,
            source_refs={source_ref},
            first_seen_at=now,
            last_seen_at=now,
            status="pending",
            category=category,
        )
        records[observation.id] = observation
        logger.info(f"Created observation {observation.id}: {text[:60]}")
        return observation

    def _find_match(
        self,
        records: dict[str, Observation],
        text: str,
        oracle: SimilarityOracle,
    ) -> Observation | None:
        """First non-denied observation, in insertion order, the oracle calls similar."""
        for existing in records.values():
            if existing.status == "denied":
                continue
            try:
                similar = oracle(text, existing.text)
            except (Exception, asyncio.CancelledError) as e:
                # Oracle is external: a comparison that fails or is cancelled
                # counts as "not similar".
                logger.warning(f"Similarity check against {existing.id} failed: {e!r}")
                continue
            if similar:
                return existing
        return None

    # ─────────────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────────────

    def get(self, observation_id: str) -> Observation:
        """Get an observation by id.

        Raises:
            NotFoundError: If no observation has this id
        """
        try:
            return self._observations[observation_id]
        except KeyError:
            raise NotFoundError("Observation", observation_id) from None

    def list_all(self) -> list[Observation]:
        """All observations in insertion order."""
        return list(self._observations.values())

    def list_by_status(self, status: ObservationStatus) -> list[Observation]:
        """Observations with ``status``, most recently reinforced first."""
        matching = [o for o in self._observations.values() if o.status == status]
        return sorted(matching, key=lambda o: o.last_seen_at, reverse=True)

    def list_review_candidates(self, thresholds: PromotionThresholds) -> list[Observation]:
        """Pending observations seen often enough to be worth reviewing."""
        return [
            o for o in self.list_by_status("pending")
            if o.count >= thresholds.min_count_to_long_term
        ]

    def query(
        self,
        status: ObservationStatus | Iterable[ObservationStatus] | None = None,
        seen_after: datetime | None = None,
        seen_before: datetime | None = None,
        date_field: DateField = "last_seen_at",
        min_count: int | None = None,
        category: ObservationCategory | None = None,
        source_ids: Iterable[str] | None = None,
        sort_by: SortField | None = None,
        descending: bool = False,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[Observation]:
        """Filter observations; every given filter must match.

        Args:
            status: One status or several (any of them matches)
            seen_after: Inclusive lower bound on ``date_field``
            seen_before: Inclusive upper bound on ``date_field``
            date_field: "first_seen_at" or "last_seen_at"
            min_count: Minimum count
            category: Exact category
            source_ids: Matches if any source ref has one of these session ids
            sort_by: Field to sort on (default: insertion order)
            descending: Reverse the sort
            offset: Results to skip
            limit: Maximum results to return

        Raises:
            ValueError: On an unknown date/sort field or negative paging values
        """
        if date_field not in get_args(DateField):
            raise ValueError(f"Cannot filter by date field: {date_field}")
        if sort_by is not None and sort_by not in get_args(SortField):
            raise ValueError(f"Cannot sort by: {sort_by}")
        if offset < 0 or (limit is not None and limit < 0):
            raise ValueError("offset and limit must not be negative")

        seen_after = as_utc(seen_after) if seen_after else None
        seen_before = as_utc(seen_before) if seen_before else None
        statuses = {status} if isinstance(status, str) else set(status or ())
        sources = set(source_ids or ())

        def matches(obs: Observation) -> bool:
            seen = getattr(obs, date_field)
            return (
                (not statuses or obs.status in statuses)
                and (seen_after is None or seen >= seen_after)
                and (seen_before is None or seen <= seen_before)
                and (min_count is None or obs.count >= min_count)
                and (category is None or obs.category == category)
                and (not sources or any(r.source_id in sources for r in obs.source_refs))
            )

        results = [o for o in self._observations.values() if matches(o)]
        if sort_by is not None:
            results.sort(key=lambda o: getattr(o, sort_by), reverse=descending)
        elif descending:
            results.reverse()

        end = None if limit is None else offset + limit
        return results[offset:end]

    def count(self) -> int:
        return len(self._observations)

    def __len__(self) -> int:
        return self.count()

    # ─────────────────────────────────────────────────────────────────────────
    # Review decisions
    # ─────────────────────────────────────────────────────────────────────────

    def approve(self, observation_id: str) -> Observation:
        """Mark a pending observation approved.

        Does not create the long-term memory; call
        ``MemoryHierarchy.promote_to_long_term`` next.
        """
        return self._transition(observation_id, "approved", "approve")

    def deny(self, observation_id: str) -> Observation:
        """Mark a pending observation denied (terminal)."""
        return self._transition(observation_id, "denied", "deny")

    def approve_many(self, observation_ids: Iterable[str]) -> list[Observation]:
        """Approve several observations with a single save.

        All ids are validated before anything is written; one bad id (or a
        failed save) leaves every observation untouched.
        """
        updated = dict(self._observations)
        approved = []
        for observation_id in observation_ids:
            observation = self._require_pending(updated, observation_id, "approve")
            updated[observation_id] = observation.model_copy(update={"status": "approved"})
            approved.append(updated[observation_id])

        if approved:
            self._commit(updated)
            logger.info(f"Approved {len(approved)} observations")
        return approved

    def skip(self, observation_id: str) -> Observation:
        """Leave a pending observation for a later review. Nothing is stored."""
        return self._require_pending(self._observations, observation_id, "skip")

    def _transition(self, observation_id: str, status: ObservationStatus, action: str) -> Observation:
        updated = dict(self._observations)
        observation = self._require_pending(updated, observation_id, action)
        updated[observation_id] = observation.model_copy(update={"status": status})
        self._commit(updated)
        logger.info(f"Observation {observation_id}: pending -> {status}")
        return updated[observation_id]

    def _require_pending(
        self, records: dict[str, Observation], observation_id: str, action: str
    ) -> Observation:
        observation = records.get(observation_id)
        if observation is None:
            raise NotFoundError("Observation", observation_id)
        if observation.status != "pending":
            raise InvalidTransitionError(observation_id, observation.status, action)
        return observation

    # ─────────────────────────────────────────────────────────────────────────
    # Maintenance
    # ─────────────────────────────────────────────────────────────────────────

    def purge_denied(self, before: datetime | None = None) -> int:
        """Physically remove denied observations.

        Never called automatically. Denied records are otherwise kept so the
        same decision is not asked for twice.

        Args:
            before: Only purge those last seen before this time

        Returns:
            Number of observations removed.
        """
        updated = {
            oid: obs
            for oid, obs in self._observations.items()
            if not (obs.status == "denied" and (before is None or obs.last_seen_at < before))
        }
        removed = len(self._observations) - len(updated)
        if removed:
            self._commit(updated)
            logger.info(f"Purged {removed} denied observations")
        return removed
