from __future__ import annotations

import logging
from typing import Protocol

from agendasync.errors import TargetResolutionError
from agendasync.execution_log import entry_from_outcome
from agendasync.fallback import derive_fallback_task, fallback_operation, should_fall_back
from agendasync.fingerprint import compute_key
from agendasync.memory import MemoryIndex
from agendasync.models import (
    APPLIED_CANCEL,
    APPLIED_CREATE,
    APPLIED_ERROR,
    APPLIED_NONE,
    APPLIED_RECORD_ONLY,
    APPLIED_SKIP,
    APPLIED_UPDATE,
    DRY_RUN_PREFIX,
    SKIP_DUPLICATE,
    SKIP_NO_TARGET,
    SKIP_NO_TIME,
    SKIP_NOT_FOUND,
    SKIP_TASKS_NOT_ENABLED,
    ItemKind,
    ItemOutcome,
    Operation,
    Plan,
    ProposedItem,
    utc_now,
)

logger = logging.getLogger(__name__)

# Outcomes that leave an actionable item unapplied.
REVIEW_OUTCOMES = frozenset(
    {SKIP_NO_TARGET, SKIP_NO_TIME, SKIP_NOT_FOUND, SKIP_TASKS_NOT_ENABLED, APPLIED_ERROR}
)


class ResourceAdapter(Protocol):
    def create(self, item: ProposedItem) -> str: ...

    def update(self, ref: str, item: ProposedItem) -> bool: ...

    def delete(self, ref: str) -> bool: ...


def resolve_target(item: ProposedItem, memory_index: MemoryIndex, existing_ref: str = "") -> str:
    """Pick the reference an UPDATE/CANCEL acts on.

    Explicit reference first, then the reference behind an explicitly named
    memory key, then whatever memory holds for the item's own key.
    """
    if item.explicit_target_ref:
        return item.explicit_target_ref
    if item.target_key:
        ref = memory_index.live_ref(item.target_key, item.kind)
        if ref:
            return ref
    if existing_ref:
        return existing_ref
    raise TargetResolutionError(f"no target for {item.operation.value} '{item.title}'")


class Reconciler:
    def __init__(
        self,
        *,
        calendar_adapter: ResourceAdapter | None,
        task_adapter: ResourceAdapter | None = None,
        fallback_enabled: bool = True,
        dry_run: bool = False,
    ) -> None:
        self.calendar_adapter = calendar_adapter
        self.task_adapter = task_adapter
        self.fallback_enabled = fallback_enabled
        self.dry_run = dry_run

    def apply_plan(self, plan: Plan, memory_index: MemoryIndex, *, record_id: str = "") -> list[ItemOutcome]:
        outcomes: list[ItemOutcome] = []
        for item in plan.items:
            outcome = self.apply(item, memory_index)
            outcomes.append(outcome)
            if outcome.applied_operation != APPLIED_NONE:
                # Later items in the same pass must see this one.
                memory_index.add(entry_from_outcome(outcome, record_id=record_id, observed_at=utc_now()))
        return outcomes

    def apply(self, item: ProposedItem, memory_index: MemoryIndex) -> ItemOutcome:
        outcome = self._apply(item, memory_index)
        if should_fall_back(item, outcome.applied_operation, enabled=self.fallback_enabled):
            derived = derive_fallback_task(item)
            logger.info("Item %s '%s' has no start time, falling back to a task", item.index, item.title)
            task_outcome = self._apply(derived, memory_index)
            return ItemOutcome(
                item=derived,
                key=task_outcome.key,
                applied_operation=fallback_operation(task_outcome.applied_operation),
                external_ref=task_outcome.external_ref,
                needs_review=task_outcome.needs_review,
                error=task_outcome.error,
                chain=[SKIP_NO_TIME, fallback_operation(task_outcome.applied_operation)],
                origin=item,
            )
        return outcome

    def _adapter_for(self, kind: ItemKind) -> ResourceAdapter | None:
        if kind == ItemKind.SCHEDULED_EVENT:
            return self.calendar_adapter
        return self.task_adapter

    def _outcome(
        self,
        item: ProposedItem,
        key: str,
        applied: str,
        *,
        ref: str = "",
        error: str = "",
    ) -> ItemOutcome:
        return ItemOutcome(
            item=item,
            key=key,
            applied_operation=applied,
            external_ref=ref,
            needs_review=item.needs_review or applied in REVIEW_OUTCOMES,
            error=error,
            chain=[applied],
        )

    def _apply(self, item: ProposedItem, memory_index: MemoryIndex) -> ItemOutcome:
        key = compute_key(item)
        if item.kind == ItemKind.DISCARD:
            return self._outcome(item, key, APPLIED_NONE)
        if item.kind == ItemKind.NOTE:
            return self._outcome(item, key, APPLIED_RECORD_ONLY)

        existing_ref = memory_index.live_ref(key, item.kind)
        if item.operation == Operation.SKIP:
            return self._outcome(item, key, APPLIED_SKIP, ref=existing_ref)
        if item.operation == Operation.CREATE and existing_ref:
            return self._outcome(item, key, SKIP_DUPLICATE, ref=existing_ref)

        adapter = self._adapter_for(item.kind)
        if adapter is None:
            return self._outcome(
                item,
                key,
                SKIP_TASKS_NOT_ENABLED,
                ref=existing_ref or item.explicit_target_ref,
            )

        target = ""
        if item.operation in (Operation.UPDATE, Operation.CANCEL):
            try:
                target = resolve_target(item, memory_index, existing_ref)
            except TargetResolutionError:
                return self._outcome(item, key, SKIP_NO_TARGET)

        if (
            item.kind == ItemKind.SCHEDULED_EVENT
            and item.operation in (Operation.CREATE, Operation.UPDATE)
            and item.start is None
        ):
            return self._outcome(item, key, SKIP_NO_TIME, ref=target)

        if self.dry_run:
            return self._outcome(item, key, f"{DRY_RUN_PREFIX}{item.operation.value}", ref=target)

        try:
            if item.operation == Operation.CREATE:
                ref = adapter.create(item)
                logger.info("Created %s '%s' as %s", item.kind.value, item.title, ref)
                return self._outcome(item, key, APPLIED_CREATE, ref=ref)
            if item.operation == Operation.UPDATE:
                if not adapter.update(target, item):
                    return self._outcome(item, key, SKIP_NOT_FOUND, ref=target)
                logger.info("Updated %s %s", item.kind.value, target)
                return self._outcome(item, key, APPLIED_UPDATE, ref=target)
            if not adapter.delete(target):
                return self._outcome(item, key, SKIP_NOT_FOUND, ref=target)
            logger.info("Cancelled %s %s", item.kind.value, target)
            return self._outcome(item, key, APPLIED_CANCEL, ref=target)
        except Exception as exc:
            logger.exception("Item %s '%s' failed", item.index, item.title)
            return self._outcome(
                item,
                key,
                APPLIED_ERROR,
                ref=target or existing_ref,
                error=f"{type(exc).__name__}: {exc}",
            )
