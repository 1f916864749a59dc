"""Engine - wires the stores together from settings.

This is what the CLI and the scheduled analysis run use. It holds no state
of its own beyond the components it builds.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, Mapping

from .config import Settings
from .hierarchy import MemoryHierarchy
from .models import LongTermMemory, Observation, RunState, SourceRef, utc_now
from .observations import ObservationStore
from .records import RecordStore
from .run_state import RunStateStore
from .similarity import SimilarityOracle, build_oracle
from .writers import CoreMemoryWriter, build_writers

logger = logging.getLogger(__name__)


class HabitualEngine:
    """Main entry point for memory operations.

    Thread-safety: designed for a single process. Two processes sharing a
    home directory race, and the last save wins.
    """

    def __init__(
        self,
        settings: Settings,
        oracle: SimilarityOracle | None = None,
        writers: Mapping[str, CoreMemoryWriter] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.oracle = oracle or build_oracle(
            settings.similarity.backend,
            settings.similarity.threshold,
            settings.similarity.model_name,
        )

        self.observations = ObservationStore(
            RecordStore(settings.observations_path, Observation),
            oracle=self.oracle,
            clock=clock,
        )
        self.hierarchy = MemoryHierarchy(
            self.observations,
            RecordStore(settings.long_term_path, LongTermMemory),
            writers=writers if writers is not None else build_writers(settings.core_targets),
            thresholds=settings.thresholds,
            clock=clock,
        )
        self.run_state = RunStateStore(RecordStore(settings.state_path, RunState), clock=clock)

    def record_extractions(self, source_ref: SourceRef, patterns: Iterable[str]) -> list[Observation]:
        """Submit every pattern extracted from one session in a single batch.

        This is the hook for the scheduled analysis run: after a pattern
        extractor has read a session, it hands the results here. The CLI
        does not call it.

        Patterns that match an already approved observation reinforce its
        long-term memory instead.
        """
        observations = self.observations.submit_batch((text, source_ref) for text in patterns)
        for observation in observations:
            if observation.status != "approved":
                continue
            memory = self.hierarchy.find_by_observation(observation.id)
            if memory is not None and memory.status == "active":
                self.hierarchy.reinforce(memory.id, source_ref)
        return observations

    def approve(self, observation_ids: list[str]) -> list[LongTermMemory]:
        """Approve observations (all or nothing) and move them to long-term memory."""
        approved = self.observations.approve_many(observation_ids)
        memories = [self.hierarchy.promote_to_long_term(obs) for obs in approved]
        logger.info(f"Moved {len(memories)} observations to long-term memory")
        return memories
