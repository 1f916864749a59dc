"""Shared test fixtures and helpers for habitual tests."""

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from habitual.hierarchy import MemoryHierarchy
from habitual.models import LongTermMemory, Observation, PromotionThresholds, RunState, SourceRef
from habitual.observations import ObservationStore
from habitual.records import RecordStore
from habitual.run_state import RunStateStore


START = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


# --- Helper classes (not fixtures) ---


class FakeClock:
    """Deterministic clock; call it to get "now", advance it explicitly."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ScriptedOracle:
    """Oracle that calls pairs similar when they share a group label.

    ``groups`` maps text -> label. Texts without a label never match.
    Every comparison is recorded in ``calls``.
    """

    def __init__(self, groups: dict[str, str] | None = None, failing: set[str] | None = None):
        self.groups = groups or {}
        self.failing = failing or set()
        self.calls: list[tuple[str, str]] = []

    def __call__(self, candidate: str, existing: str) -> bool:
        self.calls.append((candidate, existing))
        if existing in self.failing:
            raise TimeoutError(f"oracle timed out comparing with {existing!r}")
        label = self.groups.get(candidate)
        return label is not None and label == self.groups.get(existing)


class RecordingWriter:
    """Core memory writer that records appends and can fail on demand."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.appended: list[tuple[str, str]] = []

    def append(self, target_id: str, text: str) -> None:
        if self.fail:
            raise OSError(f"{target_id} is read-only")
        self.appended.append((target_id, text))


def never_similar(a: str, b: str) -> bool:
    return False


def always_similar(a: str, b: str) -> bool:
    return True


def same_text(a: str, b: str) -> bool:
    return a == b


def make_ref(source_id: str = "session-1", tool: str = "claude-code", ts: datetime = START) -> SourceRef:
    """Helper to create a source reference."""
    return SourceRef(source_id=source_id, tool_name=tool, timestamp=ts)


# --- Fixtures ---


@pytest.fixture
def temp_home():
    """Provide a temporary directory for storage files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def observation_records(temp_home):
    return RecordStore(temp_home / "observations.json", Observation)


@pytest.fixture
def memory_records(temp_home):
    return RecordStore(temp_home / "long_term_memory.json", LongTermMemory)


@pytest.fixture
def observations(observation_records, clock):
    """Fresh observation store whose default oracle never matches."""
    return ObservationStore(observation_records, oracle=never_similar, clock=clock)


@pytest.fixture
def writers():
    return {"claude_md": RecordingWriter(), "agents_md": RecordingWriter()}


@pytest.fixture
def thresholds():
    return PromotionThresholds(min_count_to_long_term=2, min_count_for_core=2, min_days_in_long_term=0)


@pytest.fixture
def hierarchy(observations, memory_records, writers, thresholds, clock):
    return MemoryHierarchy(
        observations,
        memory_records,
        writers=writers,
        thresholds=thresholds,
        clock=clock,
    )


@pytest.fixture
def run_state(temp_home, clock):
    return RunStateStore(RecordStore(temp_home / "state.json", RunState), clock=clock)
