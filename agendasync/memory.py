from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable

from agendasync.models import (
    APPLIED_CANCEL,
    SKIP_NOT_FOUND,
    ItemKind,
    MemoryEntry,
    serialize_datetime,
)

MAX_SNAPSHOT_ITEMS = 600
MAX_MEMO_HINTS = 120
MAX_MEMO_HINT_CHARS = 260

# The resource behind the reference is known to be gone.
RETIRED_OPERATIONS = frozenset({APPLIED_CANCEL, SKIP_NOT_FOUND})


def window_start(now: datetime, window_days: int) -> datetime:
    return now - timedelta(days=max(1, int(window_days)))


@dataclass
class MemoryIndex:
    """Latest memory entry per idempotency key inside one window.

    ``by_ref`` tracks the latest entry that mentions each external reference,
    so a CANCEL recorded under any key retires the reference for every key.
    """

    window_days: int
    by_key: dict[str, MemoryEntry] = field(default_factory=dict)
    by_ref: dict[str, MemoryEntry] = field(default_factory=dict)
    entries: list[MemoryEntry] = field(default_factory=list)

    def get(self, key: str) -> MemoryEntry | None:
        if not key:
            return None
        return self.by_key.get(key)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key in self.by_key

    def __len__(self) -> int:
        return len(self.by_key)

    def is_live(self, entry: MemoryEntry | None) -> bool:
        if entry is None or not entry.external_ref:
            return False
        if entry.applied_operation in RETIRED_OPERATIONS:
            return False
        latest = self.by_ref.get(entry.external_ref)
        return latest is None or latest.applied_operation not in RETIRED_OPERATIONS

    def add(self, entry: MemoryEntry) -> None:
        """Fold an entry written during the current pass into the index."""
        self.entries.append(entry)
        if entry.external_ref:
            self.by_ref[entry.external_ref] = entry
        if entry.key:
            self.by_key[entry.key] = entry

    def live_ref(self, key: str, kind: ItemKind) -> str:
        entry = self.get(key)
        if entry is None or entry.kind != kind.value or not self.is_live(entry):
            return ""
        return entry.external_ref

    def snapshot(self) -> dict[str, Any]:
        latest = sorted(self.by_key.values(), key=lambda item: item.observed_at, reverse=True)
        items = [
            {
                "key": entry.key,
                "kind": entry.kind,
                "applied_operation": entry.applied_operation,
                "title": entry.title,
                "start": entry.start,
                "end": entry.end,
                "deadline": entry.deadline,
                "location": entry.location,
                "external_ref": entry.external_ref,
                "live": self.is_live(entry),
                "observed_at": serialize_datetime(entry.observed_at),
            }
            for entry in latest[:MAX_SNAPSHOT_ITEMS]
        ]
        memo_hints: list[str] = []
        for entry in reversed(self.entries):
            if not entry.memo:
                continue
            hint = f"[{entry.observed_at.date().isoformat()}] {entry.memo}"
            memo_hints.append(hint[:MAX_MEMO_HINT_CHARS])
            if len(memo_hints) >= MAX_MEMO_HINTS:
                break
        return {"window_days": self.window_days, "items": items, "memo_hints": memo_hints}


def build_memory_index(
    entries: Iterable[MemoryEntry],
    *,
    now: datetime,
    window_days: int,
) -> MemoryIndex:
    """Index ``entries`` (in append order) that fall inside ``[now - W, now]``."""
    since = window_start(now, window_days)
    index = MemoryIndex(window_days=window_days)
    for entry in entries:
        if entry.observed_at < since or entry.observed_at > now:
            continue
        index.entries.append(entry)
        if entry.external_ref:
            previous_ref = index.by_ref.get(entry.external_ref)
            if previous_ref is None or entry.observed_at >= previous_ref.observed_at:
                index.by_ref[entry.external_ref] = entry
        if not entry.key:
            continue
        previous = index.by_key.get(entry.key)
        # Equal timestamps resolve to the later append.
        if previous is None or entry.observed_at >= previous.observed_at:
            index.by_key[entry.key] = entry
    return index
