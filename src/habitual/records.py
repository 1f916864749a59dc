"""JSON-document persistence for typed record collections.

Each collection lives in a single file:

    {"version": 1, "records": [...]}

Writes go to a sibling temporary file which is flushed, fsynced and then
renamed over the target, so a crash mid-write never corrupts the previous
file. This module is the only place that touches the filesystem for
observation, memory and run state.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Generic, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import CorruptStoreError, WriteError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

T = TypeVar("T", bound=BaseModel)


class RecordStore(Generic[T]):
    """Load/save a list of Pydantic records backed by one JSON file."""

    def __init__(self, path: Path, model: type[T]):
        """Initialize record store.

        Args:
            path: Backing JSON file (need not exist yet)
            model: Pydantic model each record validates against
        """
        self.path = Path(path)
        self.model = model

    def load(self) -> list[T]:
        """Read all records in file order.

        Returns an empty list when the file does not exist.

        Raises:
            CorruptStoreError: If the file is not valid JSON or a record
                does not validate against the model.
        """
        if not self.path.exists():
            logger.debug(f"No store at {self.path}, starting empty")
            return []

        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise CorruptStoreError(self.path, str(e)) from e

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise CorruptStoreError(self.path, f"invalid JSON: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("records", []), list):
            raise CorruptStoreError(self.path, "expected an object with a 'records' list")

        version = data.get("version", 0)
        if version != SCHEMA_VERSION:
            # Future: migrations go here. Older documents are read as-is.
            logger.debug(f"{self.path} has schema version {version}, reading as-is")

        records = []
        for i, raw in enumerate(data.get("records", [])):
            try:
                records.append(self.model.model_validate(raw))
            except ValidationError as e:
                raise CorruptStoreError(self.path, f"record {i} is invalid: {e}") from e

        logger.debug(f"Loaded {len(records)} records from {self.path}")
        return records

    def save(self, records: list[T]) -> None:
        """Atomically replace the file with ``records``.

        Raises:
            WriteError: On any I/O failure. The previous file is untouched.
        """
        document = {
            "version": SCHEMA_VERSION,
            "records": [r.model_dump(mode="json") for r in records],
        }
        payload = json.dumps(document, indent=2)

        tmp_path: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
            tmp_path = None
        except OSError as e:
            raise WriteError(self.path, str(e)) from e
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    logger.debug(f"Could not remove temp file {tmp_path}")

        logger.debug(f"Saved {len(records)} records to {self.path}")
