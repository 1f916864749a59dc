"""Tests for MemoryHierarchy: long-term promotion and core promotion."""

import random
from datetime import timedelta

import pytest

from habitual.errors import (
    InvalidTransitionError,
    NotEligibleError,
    NotFoundError,
    PartialPromotionError,
    WriteError,
)
from habitual.hierarchy import MemoryHierarchy, format_core_entry
from habitual.models import LongTermMemory, Observation, PromotionThresholds
from habitual.records import RecordStore

from conftest import RecordingWriter, ScriptedOracle, make_ref, same_text


def approved_observation(observations, text="prefers tabs over spaces", times=1):
    """Submit ``text`` ``times`` times (merging) and approve it."""
    obs = observations.submit(text, make_ref("s0"))
    for i in range(1, times):
        obs = observations.submit(text, make_ref(f"s{i}"), same_text)
    return observations.approve(obs.id)


class FailingRecordStore(RecordStore):
    broken = False

    def save(self, records):
        if self.broken:
            raise WriteError(self.path, "simulated failure")
        super().save(records)


# ─────────────────────────────────────────────────────────────────────────────
# Observation -> long-term
# ─────────────────────────────────────────────────────────────────────────────


class TestPromoteToLongTerm:
    """Tests for promote_to_long_term()."""

    def test_creates_active_memory(self, observations, hierarchy, clock):
        obs = approved_observation(observations, times=2)
        clock.advance(hours=1)

        memory = hierarchy.promote_to_long_term(obs)

        assert memory.id != obs.id
        assert memory.observation_id == obs.id
        assert memory.text == obs.text
        assert memory.count == 2
        assert memory.source_refs == obs.source_refs
        assert memory.status == "active"
        assert memory.promoted_to_long_term_at == clock.now
        assert memory.core_targets == set()

    def test_idempotent(self, observations, hierarchy, memory_records):
        """Promoting the same observation twice yields one memory."""
        obs = approved_observation(observations)

        first = hierarchy.promote_to_long_term(obs)
        second = hierarchy.promote_to_long_term(obs)

        assert second.id == first.id
        assert len(hierarchy.list_all()) == 1
        assert len(memory_records.load()) == 1

    def test_idempotent_across_restarts(self, observations, hierarchy, memory_records, clock):
        obs = approved_observation(observations)
        first = hierarchy.promote_to_long_term(obs)

        restarted = MemoryHierarchy(observations, memory_records, clock=clock)
        assert restarted.promote_to_long_term(obs).id == first.id
        assert len(restarted.list_all()) == 1

    def test_requires_approved(self, observations, hierarchy):
        pending = observations.submit("pending one", make_ref())
        with pytest.raises(InvalidTransitionError):
            hierarchy.promote_to_long_term(pending)

        denied = observations.deny(observations.submit("denied one", make_ref()).id)
        with pytest.raises(InvalidTransitionError):
            hierarchy.promote_to_long_term(denied)

        assert hierarchy.list_all() == []

    def test_uses_stored_status_not_callers_copy(self, observations, hierarchy):
        """A stale copy claiming 'approved' does not bypass the check."""
        obs = observations.submit("x", make_ref())
        forged = obs.model_copy(update={"status": "approved"})
        with pytest.raises(InvalidTransitionError):
            hierarchy.promote_to_long_term(forged)

    def test_unknown_observation(self, observations, hierarchy):
        with pytest.raises(NotFoundError):
            hierarchy.promote_to_long_term(Observation(text="never stored", status="approved"))

    def test_observation_unchanged_after_promotion(self, observations, hierarchy):
        obs = approved_observation(observations)
        hierarchy.promote_to_long_term(obs)
        assert observations.get(obs.id) == obs


# ─────────────────────────────────────────────────────────────────────────────
# Eligibility
# ─────────────────────────────────────────────────────────────────────────────


class TestListPromotable:
    """Tests for list_promotable() and the eligibility predicate."""

    def test_count_and_age_thresholds(self, observations, hierarchy, clock):
        low = hierarchy.promote_to_long_term(approved_observation(observations, "low", times=1))
        high = hierarchy.promote_to_long_term(approved_observation(observations, "high", times=3))
        thresholds = PromotionThresholds(min_count_for_core=2, min_days_in_long_term=7)

        assert hierarchy.list_promotable(thresholds) == []

        clock.advance(days=7)
        promotable = hierarchy.list_promotable(thresholds)
        assert [m.id for m in promotable] == [high.id]
        assert low.id not in [m.id for m in promotable]

    def test_sorted_by_count_then_longest_waiting(self, observations, hierarchy, clock):
        a = hierarchy.promote_to_long_term(approved_observation(observations, "a", times=2))
        clock.advance(hours=1)
        b = hierarchy.promote_to_long_term(approved_observation(observations, "b", times=4))
        clock.advance(hours=1)
        c = hierarchy.promote_to_long_term(approved_observation(observations, "c", times=2))

        ids = [m.id for m in hierarchy.list_promotable()]
        assert ids == [b.id, a.id, c.id]

    def test_excludes_non_active(self, observations, hierarchy):
        keep = hierarchy.promote_to_long_term(approved_observation(observations, "keep", times=2))
        gone = hierarchy.promote_to_long_term(approved_observation(observations, "gone", times=2))
        hierarchy.reject(gone.id)

        assert [m.id for m in hierarchy.list_promotable()] == [keep.id]

    def test_randomized_thresholds_never_violated(self, observations, hierarchy, clock):
        """No returned memory is below the count or age threshold."""
        rng = random.Random(42)
        for i in range(25):
            obs = approved_observation(observations, f"pattern {i}", times=rng.randint(1, 6))
            hierarchy.promote_to_long_term(obs)
            clock.advance(hours=rng.randint(1, 72))

        for _ in range(40):
            thresholds = PromotionThresholds(
                min_count_for_core=rng.randint(1, 7),
                min_days_in_long_term=rng.uniform(0, 30),
            )
            for memory in hierarchy.list_promotable(thresholds):
                assert memory.count >= thresholds.min_count_for_core
                age = clock.now - memory.promoted_to_long_term_at
                assert age >= timedelta(days=thresholds.min_days_in_long_term)

    def test_is_promotable(self, observations, hierarchy):
        memory = hierarchy.promote_to_long_term(approved_observation(observations, times=1))
        assert not hierarchy.is_promotable(memory)
        assert hierarchy.is_promotable(memory, PromotionThresholds(min_count_for_core=1, min_days_in_long_term=0))


# ─────────────────────────────────────────────────────────────────────────────
# Long-term -> core
# ─────────────────────────────────────────────────────────────────────────────


class TestPromoteToCore:
    """Tests for promote_to_core()."""

    def test_promotes_with_all_targets_succeeding(self, observations, hierarchy, writers, clock):
        memory = hierarchy.promote_to_long_term(approved_observation(observations, times=2))

        promoted = hierarchy.promote_to_core(memory.id, ["claude_md"])

        assert promoted.status == "promoted_to_core"
        assert promoted.core_targets == {"claude_md"}
        assert promoted.promoted_to_core_at == clock.now
        assert writers["claude_md"].appended == [("claude_md", format_core_entry(memory))]
        assert writers["agents_md"].appended == []

    def test_default_targets_are_all_writers(self, observations, hierarchy, writers):
        memory = hierarchy.promote_to_long_term(approved_observation(observations, times=2))

        promoted = hierarchy.promote_to_core(memory.id)

        assert promoted.core_targets == {"claude_md", "agents_md"}
        assert len(writers["claude_md"].appended) == 1
        assert len(writers["agents_md"].appended) == 1

    def test_rechecks_eligibility(self, observations, hierarchy, writers):
        memory = hierarchy.promote_to_long_term(approved_observation(observations, times=1))

        with pytest.raises(NotEligibleError) as exc_info:
            hierarchy.promote_to_core(memory.id, ["claude_md"])

        assert "count" in exc_info.value.reason
        assert writers["claude_md"].appended == []
        assert hierarchy.get(memory.id).status == "active"

    def test_age_threshold_enforced(self, observations, memory_records, writers, clock):
        hierarchy = MemoryHierarchy(
            observations,
            memory_records,
            writers=writers,
            thresholds=PromotionThresholds(min_count_for_core=1, min_days_in_long_term=7),
            clock=clock,
        )
        memory = hierarchy.promote_to_long_term(approved_observation(observations))

        clock.advance(days=6, hours=23)
        with pytest.raises(NotEligibleError):
            hierarchy.promote_to_core(memory.id, ["claude_md"])

        clock.advance(hours=1)
        assert hierarchy.promote_to_core(memory.id, ["claude_md"]).status == "promoted_to_core"

    def test_not_eligible_is_invalid_transition(self, observations, hierarchy):
        memory = hierarchy.promote_to_long_term(approved_observation(observations, times=1))
        with pytest.raises(InvalidTransitionError):
            hierarchy.promote_to_core(memory.id, ["claude_md"])

    def test_partial_failure_then_retry(self, observations, memory_records, thresholds, clock):
        """A failing target keeps the memory active; retrying it does not re-append others."""
        writer_a = RecordingWriter()
        writer_b = RecordingWriter(fail=True)
        hierarchy = MemoryHierarchy(
            observations,
            memory_records,
            writers={"A": writer_a, "B": writer_b},
            thresholds=thresholds,
            clock=clock,
        )
        memory = hierarchy.promote_to_long_term(approved_observation(observations, times=2))

        with pytest.raises(PartialPromotionError) as exc_info:
            hierarchy.promote_to_core(memory.id, ["A", "B"])

        assert exc_info.value.succeeded == ["A"]
        assert list(exc_info.value.failed) == ["B"]
        assert hierarchy.get(memory.id).status == "active"
        assert hierarchy.get(memory.id).core_targets == set()
        assert len(writer_a.appended) == 1

        writer_b.fail = False
        promoted = hierarchy.promote_to_core(memory.id, ["B"])

        assert promoted.status == "promoted_to_core"
        assert promoted.core_targets == {"A", "B"}
        assert len(writer_a.appended) == 1  # no duplicate append
        assert len(writer_b.appended) == 1

    def test_partial_progress_survives_restart(self, observations, memory_records, thresholds, clock):
        writer_a = RecordingWriter()
        writer_b = RecordingWriter(fail=True)
        writers = {"A": writer_a, "B": writer_b}
        hierarchy = MemoryHierarchy(observations, memory_records, writers=writers, thresholds=thresholds, clock=clock)
        memory = hierarchy.promote_to_long_term(approved_observation(observations, times=2))

        with pytest.raises(PartialPromotionError):
            hierarchy.promote_to_core(memory.id, ["A", "B"])

        writer_b.fail = False
        restarted = MemoryHierarchy(observations, memory_records, writers=writers, thresholds=thresholds, clock=clock)
        restarted.promote_to_core(memory.id, ["A", "B"])

        assert len(writer_a.appended) == 1
        assert len(writer_b.appended) == 1

    def test_retry_including_delivered_target_skips_it(self, observations, memory_records, thresholds, clock):
        writer_a = RecordingWriter()
        writer_b = RecordingWriter(fail=True)
        hierarchy = MemoryHierarchy(
            observations, memory_records, writers={"A": writer_a, "B": writer_b},
            thresholds=thresholds, clock=clock,
        )
        memory = hierarchy.promote_to_long_term(approved_observation(observations, times=2))
        with pytest.raises(PartialPromotionError):
            hierarchy.promote_to_core(memory.id, ["A", "B"])

        writer_b.fail = False
        hierarchy.promote_to_core(memory.id, ["A", "B"])
        assert len(writer_a.appended) == 1

    def test_all_targets_failing(self, observations, memory_records, thresholds, clock):
        hierarchy = MemoryHierarchy(
            observations, memory_records, writers={"A": RecordingWriter(fail=True)},
            thresholds=thresholds, clock=clock,
        )
        memory = hierarchy.promote_to_long_term(approved_observation(observations, times=2))

        with pytest.raises(PartialPromotionError) as exc_info:
            hierarchy.promote_to_core(memory.id, ["A"])

        assert exc_info.value.succeeded == []
        assert "read-only" in exc_info.value.failed["A"]
        assert hierarchy.get(memory.id).delivered_targets == set()

    def test_unknown_target_counts_as_failure(self, observations, hierarchy, writers):
        memory = hierarchy.promote_to_long_term(approved_observation(observations, times=2))

        with pytest.raises(PartialPromotionError) as exc_info:
            hierarchy.promote_to_core(memory.id, ["claude_md", "nowhere"])

        assert exc_info.value.succeeded == ["claude_md"]
        assert "nowhere" in exc_info.value.failed
        assert hierarchy.get(memory.id).status == "active"

    def test_writers_override(self, observations, hierarchy, writers):
        memory = hierarchy.promote_to_long_term(approved_observation(observations, times=2))
        other = RecordingWriter()

        promoted = hierarchy.promote_to_core(memory.id, ["custom"], writers={"custom": other})

        assert promoted.core_targets == {"custom"}
        assert len(other.appended) == 1
        assert writers["claude_md"].appended == []

    def test_empty_targets_rejected(self, observations, hierarchy):
        memory = hierarchy.promote_to_long_term(approved_observation(observations, times=2))
        with pytest.raises(ValueError):
            hierarchy.promote_to_core(memory.id, [])

    def test_terminal_states_cannot_promote(self, observations, hierarchy):
        promoted = hierarchy.promote_to_long_term(approved_observation(observations, "p", times=2))
        hierarchy.promote_to_core(promoted.id, ["claude_md"])
        with pytest.raises(InvalidTransitionError):
            hierarchy.promote_to_core(promoted.id, ["claude_md"])

        rejected = hierarchy.promote_to_long_term(approved_observation(observations, "r", times=2))
        hierarchy.reject(rejected.id)
        with pytest.raises(InvalidTransitionError):
            hierarchy.promote_to_core(rejected.id, ["claude_md"])

    def test_unknown_memory(self, hierarchy):
        with pytest.raises(NotFoundError):
            hierarchy.promote_to_core("missing", ["claude_md"])

    def test_unsaved_progress_raises_write_error(self, temp_home, observations, thresholds, clock):
        """If partial progress cannot be saved, a later full retry reaches every target."""
        records = FailingRecordStore(temp_home / "ltm.json", LongTermMemory)
        writer_a = RecordingWriter()
        writer_b = RecordingWriter(fail=True)
        hierarchy = MemoryHierarchy(
            observations, records, writers={"A": writer_a, "B": writer_b},
            thresholds=thresholds, clock=clock,
        )
        memory = hierarchy.promote_to_long_term(approved_observation(observations, times=2))

        records.broken = True
        with pytest.raises(WriteError):
            hierarchy.promote_to_core(memory.id, ["A", "B"])
        assert hierarchy.get(memory.id).delivered_targets == set()

        records.broken = False
        writer_b.fail = False
        promoted = hierarchy.promote_to_core(memory.id, ["A", "B"])

        assert promoted.core_targets == {"A", "B"}
        assert len(writer_a.appended) == 2  # at-least-once
        assert len(writer_b.appended) == 1

    def test_threshold_override_matches_list_promotable(self, observations, hierarchy):
        """Thresholds that list a memory as promotable also let it be promoted."""
        memory = hierarchy.promote_to_long_term(approved_observation(observations, times=1))
        lenient = PromotionThresholds(min_count_for_core=1, min_days_in_long_term=0)

        assert [m.id for m in hierarchy.list_promotable(lenient)] == [memory.id]
        with pytest.raises(NotEligibleError):
            hierarchy.promote_to_core(memory.id, ["claude_md"])

        promoted = hierarchy.promote_to_core(memory.id, ["claude_md"], thresholds=lenient)
        assert promoted.status == "promoted_to_core"

    def test_final_write_failure_rolls_back(self, temp_home, observations, writers, thresholds, clock):
        records = FailingRecordStore(temp_home / "ltm.json", LongTermMemory)
        hierarchy = MemoryHierarchy(observations, records, writers=writers, thresholds=thresholds, clock=clock)
        memory = hierarchy.promote_to_long_term(approved_observation(observations, times=2))

        records.broken = True
        with pytest.raises(WriteError):
            hierarchy.promote_to_core(memory.id, ["claude_md"])

        assert hierarchy.get(memory.id).status == "active"
        assert records.load()[0].status == "active"


# ─────────────────────────────────────────────────────────────────────────────
# Reject, reinforce, counts
# ─────────────────────────────────────────────────────────────────────────────


class TestReject:
    """Tests for reject()."""

    def test_reject_active(self, observations, hierarchy, clock):
        memory = hierarchy.promote_to_long_term(approved_observation(observations))
        rejected = hierarchy.reject(memory.id)

        assert rejected.status == "rejected"
        assert rejected.rejected_at == clock.now

    def test_reject_is_terminal(self, observations, hierarchy):
        memory = hierarchy.promote_to_long_term(approved_observation(observations))
        hierarchy.reject(memory.id)
        with pytest.raises(InvalidTransitionError):
            hierarchy.reject(memory.id)

    def test_cannot_reject_promoted(self, observations, hierarchy):
        memory = hierarchy.promote_to_long_term(approved_observation(observations, times=2))
        hierarchy.promote_to_core(memory.id, ["claude_md"])
        with pytest.raises(InvalidTransitionError):
            hierarchy.reject(memory.id)


class TestReinforce:
    """Tests for reinforce()."""

    def test_reinforce_bumps_count(self, observations, hierarchy, clock):
        memory = hierarchy.promote_to_long_term(approved_observation(observations))
        clock.advance(days=1)

        reinforced = hierarchy.reinforce(memory.id, make_ref("later"))

        assert reinforced.count == memory.count + 1
        assert reinforced.last_seen_at == clock.now
        assert make_ref("later") in reinforced.source_refs

    def test_reinforce_can_make_memory_promotable(self, observations, hierarchy):
        memory = hierarchy.promote_to_long_term(approved_observation(observations))
        assert hierarchy.list_promotable() == []

        hierarchy.reinforce(memory.id, make_ref("later"))
        assert [m.id for m in hierarchy.list_promotable()] == [memory.id]

    def test_reinforce_requires_active(self, observations, hierarchy):
        memory = hierarchy.promote_to_long_term(approved_observation(observations))
        hierarchy.reject(memory.id)
        with pytest.raises(InvalidTransitionError):
            hierarchy.reinforce(memory.id, make_ref())


def test_counts(observations, hierarchy):
    observations.submit("pending 1", make_ref())
    observations.submit("pending 2", make_ref())
    active = hierarchy.promote_to_long_term(approved_observation(observations, "active", times=1))
    core = hierarchy.promote_to_long_term(approved_observation(observations, "core", times=2))
    hierarchy.promote_to_core(core.id, ["claude_md"])

    counts = hierarchy.counts()
    assert counts.pending_observations == 2
    assert counts.active_long_term == 1
    assert counts.promoted_to_core == 1
    assert hierarchy.get(active.id).status == "active"


def test_format_core_entry(observations, hierarchy):
    obs = approved_observation(observations, "prefers tabs over spaces", times=3)
    memory = hierarchy.promote_to_long_term(obs)

    entry = format_core_entry(memory)

    assert entry.startswith("## prefers tabs over spaces\n")
    assert "- Count: 3" in entry
    assert "- First seen: 2026-01-05" in entry
    assert "- Last seen: 2026-01-05" in entry
    assert "- Sources: 3" in entry


def test_end_to_end_scenario(observations, hierarchy, writers):
    """Submit, dedup, approve, promote to long-term, then to core."""
    oracle = ScriptedOracle({
        "prefers tabs over spaces": "tabs",
        "indents with tabs not spaces": "tabs",
    })

    first = observations.submit("prefers tabs over spaces", make_ref("s1"), oracle)
    assert (first.count, first.status) == (1, "pending")

    second = observations.submit("indents with tabs not spaces", make_ref("s2"), oracle)
    assert second.id == first.id
    assert second.count == 2

    approved = observations.approve(first.id)
    assert approved.status == "approved"

    memory = hierarchy.promote_to_long_term(approved)
    assert (memory.count, memory.status) == (2, "active")

    thresholds = PromotionThresholds(min_count_for_core=2, min_days_in_long_term=0)
    assert memory.id in [m.id for m in hierarchy.list_promotable(thresholds)]

    promoted = hierarchy.promote_to_core(memory.id, ["claude_md"])
    assert promoted.status == "promoted_to_core"
    assert promoted.core_targets == {"claude_md"}
    assert len(writers["claude_md"].appended) == 1
