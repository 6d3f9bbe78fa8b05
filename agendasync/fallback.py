from __future__ import annotations

from agendasync.models import (
    FALLBACK_PREFIX,
    SKIP_NO_TIME,
    ItemKind,
    Operation,
    ProposedItem,
)


def should_fall_back(item: ProposedItem, applied_operation: str, *, enabled: bool) -> bool:
    return (
        enabled
        and applied_operation == SKIP_NO_TIME
        and item.kind == ItemKind.SCHEDULED_EVENT
    )


def derive_fallback_task(item: ProposedItem) -> ProposedItem:
    """Re-express an unplaceable event as a deadline task."""
    return item.with_updates(
        kind=ItemKind.DEADLINE_TASK,
        operation=Operation.CREATE,
        deadline=item.deadline or item.start,
        start=None,
        end=None,
        all_day=False,
        explicit_target_ref="",
        target_key="",
    )


def fallback_operation(applied_operation: str) -> str:
    return f"{FALLBACK_PREFIX}{applied_operation}"
