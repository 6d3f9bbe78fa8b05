from __future__ import annotations

import logging
import threading
import traceback
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from agendasync.ai_client import OpenAICompatibleClient
from agendasync.caldav_client import CalDAVService, CalendarAdapter, TaskAdapter
from agendasync.config_manager import ConfigManager
from agendasync.errors import LockContentionError, PlannerUnavailableError
from agendasync.execution_log import ExecutionLogWriter
from agendasync.memory import MemoryIndex, build_memory_index, window_start
from agendasync.models import (
    APPLIED_CANCEL,
    APPLIED_CREATE,
    APPLIED_UPDATE,
    FALLBACK_PREFIX,
    AppConfig,
    ItemOutcome,
    Record,
    SyncResult,
)
from agendasync.planner import build_messages, build_planning_payload
from agendasync.reconciler import Reconciler
from agendasync.record_source import InboxRecordSource
from agendasync.state_store import StateStore
from agendasync.validator import normalize_plan

logger = logging.getLogger(__name__)

# One reconciliation pass per process at a time.
PASS_LOCK = threading.Lock()

MUTATING_OPERATIONS = {APPLIED_CREATE, APPLIED_UPDATE, APPLIED_CANCEL}


def record_marker_key(record_id: str) -> str:
    return f"record:{record_id}:revision"


def _count_changes(outcomes: list[ItemOutcome]) -> int:
    count = 0
    for outcome in outcomes:
        applied = outcome.applied_operation
        if applied.startswith(FALLBACK_PREFIX):
            applied = applied[len(FALLBACK_PREFIX) :]
        if applied in MUTATING_OPERATIONS:
            count += 1
    return count


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        *,
        lock: Any = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.log_writer = ExecutionLogWriter(state_store)
        self._lock = lock if lock is not None else PASS_LOCK

    @contextmanager
    def _exclusive(self, timeout_seconds: float) -> Iterator[None]:
        if not self._lock.acquire(timeout=timeout_seconds):
            raise LockContentionError("another reconciliation pass is running")
        try:
            yield
        finally:
            self._lock.release()

    def _build_reconciler(self, config: AppConfig) -> Reconciler:
        service = CalDAVService(config.caldav)
        event_info = service.ensure_calendar(
            config.caldav.event_calendar_id,
            config.caldav.event_calendar_name,
            "VEVENT",
        )
        updates: dict[str, Any] = {}
        if config.caldav.event_calendar_id != event_info.calendar_id:
            updates["event_calendar_id"] = event_info.calendar_id
        task_adapter = None
        if config.caldav.task_list_name or config.caldav.task_list_id:
            task_info = service.ensure_calendar(
                config.caldav.task_list_id,
                config.caldav.task_list_name,
                "VTODO",
            )
            if config.caldav.task_list_id != task_info.calendar_id:
                updates["task_list_id"] = task_info.calendar_id
            task_adapter = TaskAdapter(service, task_info.calendar_id, config.scheduling)
        if updates:
            self.config_manager.update({"caldav": updates})
        return Reconciler(
            calendar_adapter=CalendarAdapter(service, event_info.calendar_id, config.scheduling),
            task_adapter=task_adapter,
            fallback_enabled=config.scheduling.fallback_to_task,
            dry_run=config.pipeline.dry_run,
        )

    def load_memory_index(self, config: AppConfig, now: datetime) -> MemoryIndex:
        entries = self.state_store.read_memory_window(
            window_start(now, config.sync.window_days),
            limit=config.sync.max_history_rows,
        )
        return build_memory_index(entries, now=now, window_days=config.sync.window_days)

    def is_processed(self, record: Record) -> bool:
        if not record.revision:
            return False
        return self.state_store.get_meta(record_marker_key(record.record_id)) == record.revision

    def reset_record(self, record_id: str) -> bool:
        return self.state_store.delete_meta(record_marker_key(record_id))

    def run_pending(self, trigger: str = "scheduled") -> SyncResult | None:
        """Run one pass over the oldest record not yet processed, if any."""
        config = self.config_manager.load()
        source = InboxRecordSource(config.pipeline.inbox_dir)
        for record in source.list_records():
            if self.is_processed(record):
                continue
            return self.run_once(record, trigger=trigger)
        return None

    def run_once(self, record: Record, trigger: str = "manual") -> SyncResult:
        started_at = datetime.now(timezone.utc)
        config = self.config_manager.load()
        try:
            with self._exclusive(config.sync.lock_timeout_seconds):
                return self._run_locked(record, trigger=trigger, config=config, started_at=started_at)
        except LockContentionError as exc:
            logger.info("Pass for record %s skipped: %s", record.record_id, exc)
            return SyncResult(
                status="skipped",
                message=str(exc),
                duration_ms=0,
                changes_applied=0,
                needs_review=0,
                trigger=trigger,
                record_id=record.record_id,
            )

    def _finish(
        self,
        *,
        status: str,
        message: str,
        record: Record,
        trigger: str,
        started_at: datetime,
        outcomes: list[ItemOutcome] | None = None,
    ) -> SyncResult:
        outcomes = outcomes or []
        duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
        changes_applied = _count_changes(outcomes)
        needs_review = sum(1 for outcome in outcomes if outcome.needs_review)
        run_id = self.state_store.record_sync_run(
            trigger=trigger,
            status=status,
            message=message,
            duration_ms=duration_ms,
            changes_applied=changes_applied,
            needs_review=needs_review,
            record_id=record.record_id,
        )
        return SyncResult(
            status=status,
            message=f"{message} run_id={run_id}",
            duration_ms=duration_ms,
            changes_applied=changes_applied,
            needs_review=needs_review,
            trigger=trigger,
            record_id=record.record_id,
            outcomes=outcomes,
        )

    def _run_locked(
        self,
        record: Record,
        *,
        trigger: str,
        config: AppConfig,
        started_at: datetime,
    ) -> SyncResult:
        if not config.caldav.is_configured():
            return self._finish(
                status="skipped",
                message="CalDAV config missing base_url/username. Pass skipped.",
                record=record,
                trigger=trigger,
                started_at=started_at,
            )

        outcomes: list[ItemOutcome] = []
        try:
            now = datetime.now(timezone.utc)
            memory_index = self.load_memory_index(config, now)
            payload = build_planning_payload(
                record=record,
                memory_snapshot=memory_index.snapshot(),
                timezone=config.sync.timezone,
                now=now,
            )
            raw_plan = OpenAICompatibleClient(config.ai).generate_plan(messages=build_messages(payload))
            plan = normalize_plan(
                raw_plan,
                record=record,
                max_items=config.pipeline.max_items_per_pass,
                timezone=config.sync.timezone,
                default_deadline_time=config.scheduling.default_deadline_local_time,
            )

            reconciler = self._build_reconciler(config)
            outcomes = reconciler.apply_plan(plan, memory_index, record_id=record.record_id)
            self.log_writer.write(record, plan, outcomes)
            if record.revision:
                self.state_store.set_meta(record_marker_key(record.record_id), record.revision)
        except PlannerUnavailableError as exc:
            logger.warning("Planner unavailable for record %s: %s", record.record_id, exc)
            return self._finish(
                status="error",
                message=f"PlannerUnavailableError: {exc}",
                record=record,
                trigger=trigger,
                started_at=started_at,
            )
        except Exception as exc:
            logger.exception("Pass for record %s failed", record.record_id)
            return self._finish(
                status="error",
                message=f"{type(exc).__name__}: {exc}\n{traceback.format_exc(limit=5)}",
                record=record,
                trigger=trigger,
                started_at=started_at,
                outcomes=outcomes,
            )

        message = f"Processed record {record.record_id}: {len(outcomes)} items."
        logger.info(message)
        return self._finish(
            status="success",
            message=message,
            record=record,
            trigger=trigger,
            started_at=started_at,
            outcomes=outcomes,
        )
