"""
Knowledge Store
===============
Durable lessons learned from failures, consulted when planning new work.

Two implementations share the KnowledgeStore protocol:
- InMemoryKnowledgeStore: process-local, used in tests and dry runs
- JsonlKnowledgeStore: append-only JSONL ledger with file locking and schema
  validation, so several engine processes can share one ledger

``query(tags, limit)`` returns entries sharing at least one tag with the
request (all entries when no tags are given), most important first, newest
first among equals.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol

from filelock import FileLock, Timeout
from loguru import logger

from taskforge.config import KNOWLEDGE, TIMEOUTS
from taskforge.engine.errors import KnowledgeStoreUnavailable
from taskforge.engine.models import new_id, utc_now
from taskforge.utils.schema_validation import Schema, validate_against_schema


_ENTRY_SCHEMA = Schema.KNOWLEDGE_ENTRY


@dataclass
class KnowledgeEntry:
    """A durable lesson."""
    category: str
    content: str
    tags: List[str]
    importance: int
    source_task_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: new_id("kn"))
    created_at: str = field(default_factory=lambda: utc_now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category,
            "content": self.content,
            "tags": list(self.tags),
            "importance": self.importance,
            "created_at": self.created_at,
            "source_task_id": self.source_task_id,
            "context": dict(self.context),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KnowledgeEntry":
        return cls(
            id=data["id"],
            category=data["category"],
            content=data["content"],
            tags=list(data.get("tags") or []),
            importance=int(data["importance"]),
            created_at=data["created_at"],
            source_task_id=data.get("source_task_id"),
            context=dict(data.get("context") or {}),
        )


class KnowledgeStore(Protocol):
    """Protocol implemented by knowledge stores.

    Both methods raise KnowledgeStoreUnavailable when the store cannot be
    read or written.
    """

    def query(self, tags: Iterable[str], limit: int = 10) -> List[KnowledgeEntry]:
        ...

    def append(self, entry: KnowledgeEntry) -> None:
        ...


def select_entries(entries: Iterable[KnowledgeEntry], tags: Iterable[str], limit: int) -> List[KnowledgeEntry]:
    """Filter by tag overlap and order by importance, then recency."""
    wanted = {t.lower() for t in tags}
    matched = [
        e for e in entries
        if not wanted or wanted.intersection(t.lower() for t in e.tags)
    ]
    matched.sort(key=lambda e: (e.importance, e.created_at), reverse=True)
    return matched[:max(0, limit)]


class InMemoryKnowledgeStore:
    """Process-local knowledge store."""

    def __init__(self, entries: Optional[Iterable[KnowledgeEntry]] = None):
        self._entries: List[KnowledgeEntry] = list(entries or [])

    def query(self, tags: Iterable[str], limit: int = 10) -> List[KnowledgeEntry]:
        return select_entries(self._entries, tags, limit)

    def append(self, entry: KnowledgeEntry) -> None:
        validate_against_schema(entry.to_dict(), _ENTRY_SCHEMA)
        self._entries.append(entry)

    def __len__(self) -> int:
        return len(self._entries)

    def all(self) -> List[KnowledgeEntry]:
        return list(self._entries)


@dataclass(frozen=True)
class KnowledgeStorePaths:
    """Resolved paths for a knowledge ledger."""

    store_dir: Path
    ledger_path: Path
    lock_path: Path


class JsonlKnowledgeStore:
    """Append-only knowledge ledger (JSONL).

    The ledger lives at ``<root>/<store_subdir>/<ledger_filename>``; writes
    take an exclusive file lock.
    """

    def __init__(
        self,
        root: str = ".",
        store_subdir: str = KNOWLEDGE.STORE_DIR,
        ledger_filename: str = KNOWLEDGE.LEDGER_FILENAME,
        lock_timeout_seconds: int = TIMEOUTS.FILE_LOCK,
    ):
        self.root = Path(root).expanduser().resolve()
        self.store_subdir = store_subdir
        self.ledger_filename = ledger_filename
        self.lock_timeout_seconds = lock_timeout_seconds

    def paths(self) -> KnowledgeStorePaths:
        store_dir = self.root / self.store_subdir
        ledger_path = store_dir / self.ledger_filename
        lock_path = ledger_path.with_suffix(ledger_path.suffix + ".lock")
        return KnowledgeStorePaths(store_dir=store_dir, ledger_path=ledger_path, lock_path=lock_path)

    def append(self, entry: KnowledgeEntry) -> None:
        """Validate and append one entry."""
        record = entry.to_dict()
        try:
            validate_against_schema(record, _ENTRY_SCHEMA)
        except ValueError as e:
            raise KnowledgeStoreUnavailable(f"Refusing invalid knowledge entry: {e}") from e

        p = self.paths()
        line = json.dumps(record, ensure_ascii=False)
        try:
            p.store_dir.mkdir(parents=True, exist_ok=True)
            with FileLock(p.lock_path, timeout=self.lock_timeout_seconds):
                with open(p.ledger_path, "a", encoding="utf-8") as f:
                    f.write(line)
                    f.write("\n")
                    f.flush()
        except Timeout as e:
            raise KnowledgeStoreUnavailable(
                f"Timed out acquiring knowledge store lock {p.lock_path} after {self.lock_timeout_seconds}s"
            ) from e
        except OSError as e:
            raise KnowledgeStoreUnavailable(f"Failed to append knowledge entry to {p.ledger_path}: {e}") from e

    def iter_entries(self) -> Iterator[KnowledgeEntry]:
        """Iterate entries in insertion order, skipping corrupt lines."""
        p = self.paths()
        if not p.ledger_path.exists():
            return
        try:
            with open(p.ledger_path, "r", encoding="utf-8") as f:
                for idx, raw_line in enumerate(f, start=1):
                    line = raw_line.strip()
                    if not line:
                        continue
                    try:
                        obj = json.loads(line)
                        validate_against_schema(obj, _ENTRY_SCHEMA)
                    except (json.JSONDecodeError, ValueError) as e:
                        logger.warning(f"Skipping invalid knowledge record at {p.ledger_path} line {idx}: {e}")
                        continue
                    yield KnowledgeEntry.from_dict(obj)
        except OSError as e:
            raise KnowledgeStoreUnavailable(f"Failed to read knowledge ledger {p.ledger_path}: {e}") from e

    def query(self, tags: Iterable[str], limit: int = 10) -> List[KnowledgeEntry]:
        return select_entries(self.iter_entries(), tags, limit)

    def count(self) -> int:
        return sum(1 for _ in self.iter_entries())
