"""Append-only record store shared by the pipeline stages.

Records are grouped by category (``executions``, ``decisions``, ``drift``,
``feedback``, ``lineage``). ``read_all`` returns every entry of a category
regardless of age; retention belongs to whoever owns the files.

Two implementations:
- ``InMemoryStore`` for tests and short-lived hosts.
- ``JsonlStore`` writes one NDJSON file per category. Every line carries a
  SHA-256 checksum of its payload; tampered or malformed lines are skipped
  with a warning on read. Physical writes are serialized with a lock so
  concurrent capture sessions never interleave records.
"""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import structlog

from autopromote.identity import canonical_json, sha256_hex

logger = structlog.get_logger()

EXECUTIONS = "executions"
DECISIONS = "decisions"
DRIFT = "drift"
FEEDBACK = "feedback"
LINEAGE = "lineage"


@dataclass(frozen=True)
class StoreEntry:
    """One stored record."""

    category: str
    timestamp: float
    data: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ExecutionStore(Protocol):
    """Interface every record store must satisfy."""

    def append(self, category: str, data: dict[str, Any]) -> None:
        """Append one record to a category."""
        ...

    def read_all(self, category: str) -> list[StoreEntry]:
        """Return every record in a category, oldest first."""
        ...


class InMemoryStore:
    """Store that keeps records in process memory only."""

    def __init__(self) -> None:
        self._entries: dict[str, list[StoreEntry]] = {}
        self._lock = threading.Lock()

    def append(self, category: str, data: dict[str, Any]) -> None:
        entry = StoreEntry(category=category, timestamp=time.time(), data=data)
        with self._lock:
            self._entries.setdefault(category, []).append(entry)

    def read_all(self, category: str) -> list[StoreEntry]:
        with self._lock:
            return list(self._entries.get(category, []))


def _checksum(category: str, timestamp: float, data: dict[str, Any]) -> str:
    return sha256_hex(
        canonical_json({"category": category, "timestamp": timestamp, "data": data})
    )


class JsonlStore:
    """Checksummed NDJSON store, one ``<category>.jsonl`` file per category.

    Args:
        root: Directory holding the category files. Created if missing.
    """

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, category: str) -> Path:
        return self._root / f"{category}.jsonl"

    def append(self, category: str, data: dict[str, Any]) -> None:
        """Append one record. Raises OSError if the file cannot be written."""
        timestamp = time.time()
        record = {
            "category": category,
            "timestamp": timestamp,
            "data": data,
            "_checksum": _checksum(category, timestamp, data),
        }
        line = json.dumps(record, default=str) + "\n"
        with self._lock:
            with self.path_for(category).open("a", encoding="utf-8") as f:
                f.write(line)

    def read_all(self, category: str) -> list[StoreEntry]:
        path = self.path_for(category)
        if not path.exists():
            return []

        log = logger.bind(path=str(path))
        entries: list[StoreEntry] = []
        with self._lock:
            lines = path.read_text(encoding="utf-8").splitlines()

        for line_num, raw_line in enumerate(lines, start=1):
            stripped = raw_line.strip()
            if not stripped:
                continue
            try:
                record = json.loads(stripped)
                entry = StoreEntry(
                    category=record["category"],
                    timestamp=record["timestamp"],
                    data=record["data"],
                )
                stored_checksum = record["_checksum"]
            except (json.JSONDecodeError, KeyError, TypeError):
                log.warning("store.malformed_line", line=line_num)
                continue

            if stored_checksum != _checksum(entry.category, entry.timestamp, entry.data):
                log.warning("store.checksum_mismatch", line=line_num)
                continue
            entries.append(entry)
        return entries
