"""Exception types raised by the stores and the promotion engine."""

from __future__ import annotations

from pathlib import Path


class HabitualError(Exception):
    """Base class for all habitual errors."""


class NotFoundError(HabitualError, KeyError):
    """No record with the requested id."""

    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.args[0]


class InvalidTransitionError(HabitualError):
    """A status precondition was violated."""

    def __init__(self, record_id: str, current: str, action: str, message: str | None = None):
        self.record_id = record_id
        self.current = current
        self.action = action
        super().__init__(message or f"Cannot {action} {record_id}: status is '{current}'")


class NotEligibleError(InvalidTransitionError):
    """An active long-term memory does not yet meet the core thresholds."""

    def __init__(self, record_id: str, reason: str):
        self.reason = reason
        super().__init__(
            record_id,
            "active",
            "promote to core",
            f"{record_id} is not eligible for core promotion: {reason}",
        )


class CorruptStoreError(HabitualError):
    """A backing file exists but cannot be read as a valid collection."""

    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Corrupt store {path}: {reason}")


class WriteError(HabitualError):
    """Saving a collection failed; the previous file is left intact."""

    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to write {path}: {reason}")


class PartialPromotionError(HabitualError):
    """Some core memory targets did not accept the entry.

    Retry ``promote_to_core`` with ``failed`` as the target list.
    """

    def __init__(self, memory_id: str, succeeded: list[str], failed: dict[str, str]):
        self.memory_id = memory_id
        self.succeeded = succeeded
        self.failed = failed
        details = "; ".join(f"{target}: {msg}" for target, msg in failed.items())
        super().__init__(
            f"Core promotion of {memory_id} incomplete "
            f"(succeeded: {', '.join(succeeded) or 'none'}; failed: {details})"
        )


class ConfigError(HabitualError):
    """The configuration file is unreadable or invalid."""
