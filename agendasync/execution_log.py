from __future__ import annotations

from datetime import datetime
from typing import Protocol, Sequence

from agendasync.models import (
    APPLIED_NONE,
    NO_ITEMS,
    ItemKind,
    ItemOutcome,
    MemoryEntry,
    Operation,
    Plan,
    Record,
    serialize_datetime,
    utc_now,
)
from agendasync.validator import MAX_MEMO_CHARS

NO_ITEMS_TITLE = "(no items)"


class HistoryStore(Protocol):
    def append_memory_entries(self, entries: Sequence[MemoryEntry]) -> int: ...

    def read_memory_window(self, since: datetime, limit: int = ...) -> list[MemoryEntry]: ...


def entry_from_outcome(outcome: ItemOutcome, *, record_id: str, observed_at: datetime) -> MemoryEntry:
    item = outcome.item
    memo = item.memo
    if not memo and item.kind == ItemKind.NOTE:
        memo = item.body[:MAX_MEMO_CHARS]
    return MemoryEntry(
        key=outcome.key,
        kind=item.kind.value,
        requested_operation=outcome.requested_operation.value,
        applied_operation=outcome.applied_operation,
        observed_at=observed_at,
        external_ref=outcome.external_ref,
        record_id=record_id,
        item_index=item.index,
        title=item.title,
        start=serialize_datetime(item.start) or "",
        end=serialize_datetime(item.end) or "",
        deadline=serialize_datetime(item.deadline) or "",
        location=item.location,
        memo=memo,
        needs_review=outcome.needs_review,
        confidence=item.confidence,
        error=outcome.error,
    )


def no_items_entry(record: Record, plan: Plan, *, observed_at: datetime) -> MemoryEntry:
    return MemoryEntry(
        key="",
        kind=ItemKind.NOTE.value,
        requested_operation=Operation.SKIP.value,
        applied_operation=NO_ITEMS,
        observed_at=observed_at,
        record_id=record.record_id,
        title=NO_ITEMS_TITLE,
        memo=(plan.assistant_memo or plan.classification.reasoning)[:MAX_MEMO_CHARS],
    )


class ExecutionLogWriter:
    """Turns the outcomes of one pass into history entries."""

    def __init__(self, store: HistoryStore) -> None:
        self.store = store

    def build_entries(
        self,
        record: Record,
        plan: Plan,
        outcomes: Sequence[ItemOutcome],
        *,
        observed_at: datetime | None = None,
    ) -> list[MemoryEntry]:
        observed_at = observed_at or utc_now()
        entries = [
            entry_from_outcome(outcome, record_id=record.record_id, observed_at=observed_at)
            for outcome in sorted(outcomes, key=lambda item: item.item.index)
            if outcome.applied_operation != APPLIED_NONE
        ]
        if not entries:
            entries.append(no_items_entry(record, plan, observed_at=observed_at))
        return entries

    def write(
        self,
        record: Record,
        plan: Plan,
        outcomes: Sequence[ItemOutcome],
        *,
        observed_at: datetime | None = None,
    ) -> list[MemoryEntry]:
        entries = self.build_entries(record, plan, outcomes, observed_at=observed_at)
        self.store.append_memory_entries(entries)
        return entries
