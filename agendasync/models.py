from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any


class ItemKind(str, Enum):
    SCHEDULED_EVENT = "SCHEDULED_EVENT"
    DEADLINE_TASK = "DEADLINE_TASK"
    NOTE = "NOTE"
    DISCARD = "DISCARD"


class Operation(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    CANCEL = "CANCEL"
    SKIP = "SKIP"


class Category(str, Enum):
    ACTIONABLE = "ACTIONABLE"
    INFO = "INFO"
    PROMO = "PROMO"


class Priority(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


# Applied operations recorded in history.
APPLIED_NONE = "NONE"
APPLIED_RECORD_ONLY = "RECORD_ONLY"
APPLIED_CREATE = "CREATE"
APPLIED_UPDATE = "UPDATE"
APPLIED_CANCEL = "CANCEL"
APPLIED_SKIP = "SKIP"
APPLIED_ERROR = "ERROR"
SKIP_DUPLICATE = "SKIP_DUPLICATE"
SKIP_NO_TARGET = "SKIP_NO_TARGET"
SKIP_NO_TIME = "SKIP_NO_TIME"
SKIP_NOT_FOUND = "SKIP_NOT_FOUND"
SKIP_TASKS_NOT_ENABLED = "SKIP_TASKS_NOT_ENABLED"
NO_ITEMS = "NO_ITEMS"
FALLBACK_PREFIX = "FALLBACK_TASK_"
DRY_RUN_PREFIX = "DRY_RUN_"

DEFAULT_CONFIDENCE = 0.6


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""
    event_calendar_id: str = ""
    event_calendar_name: str = "AgendaSync Events"
    task_list_id: str = ""
    task_list_name: str = "AgendaSync Tasks"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
            event_calendar_id=str(data.get("event_calendar_id", "")).strip(),
            event_calendar_name=str(data.get("event_calendar_name", "AgendaSync Events")).strip()
            or "AgendaSync Events",
            task_list_id=str(data.get("task_list_id", "")).strip(),
            # An explicitly empty name disables the task list.
            task_list_name=str(data.get("task_list_name", "AgendaSync Tasks") or "").strip(),
        )

    def is_configured(self) -> bool:
        return bool(self.base_url and self.username)


@dataclass
class AIConfig:
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    timeout_seconds: int = 90
    temperature: float = 0.2

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AIConfig":
        data = data or {}
        try:
            temperature = float(data.get("temperature", 0.2))
        except (TypeError, ValueError):
            temperature = 0.2
        return cls(
            base_url=str(data.get("base_url", "https://api.openai.com/v1")).strip()
            or "https://api.openai.com/v1",
            api_key=str(data.get("api_key", "")).strip(),
            model=str(data.get("model", "gpt-4o-mini")).strip() or "gpt-4o-mini",
            timeout_seconds=int(data.get("timeout_seconds", 90)),
            temperature=min(2.0, max(0.0, temperature)),
        )


@dataclass
class SyncConfig:
    window_days: int = 62
    interval_seconds: int = 300
    timezone: str = "UTC"
    lock_timeout_seconds: float = 10.0
    max_history_rows: int = 5000

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            window_days=max(1, int(data.get("window_days", 62))),
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            lock_timeout_seconds=max(0.0, float(data.get("lock_timeout_seconds", 10.0))),
            max_history_rows=max(1, int(data.get("max_history_rows", 5000))),
        )


@dataclass
class SchedulingConfig:
    default_event_duration_minutes: int = 60
    default_deadline_local_time: str = "17:00"
    add_reminders: bool = True
    fallback_to_task: bool = True
    calendar_title_prefix: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SchedulingConfig":
        data = data or {}
        deadline_time = str(data.get("default_deadline_local_time", "17:00")).strip()
        try:
            datetime.strptime(deadline_time, "%H:%M")
        except ValueError:
            deadline_time = "17:00"
        return cls(
            default_event_duration_minutes=max(1, int(data.get("default_event_duration_minutes", 60))),
            default_deadline_local_time=deadline_time,
            add_reminders=bool(data.get("add_reminders", True)),
            fallback_to_task=bool(data.get("fallback_to_task", True)),
            calendar_title_prefix=str(data.get("calendar_title_prefix", "") or "").strip(),
        )


@dataclass
class PipelineConfig:
    inbox_dir: str = "data/inbox"
    max_items_per_pass: int = 30
    dry_run: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "PipelineConfig":
        data = data or {}
        return cls(
            inbox_dir=str(data.get("inbox_dir", "data/inbox")).strip() or "data/inbox",
            max_items_per_pass=min(60, max(1, int(data.get("max_items_per_pass", 30)))),
            dry_run=bool(data.get("dry_run", False)),
        )


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            ai=AIConfig.from_dict(data.get("ai")),
            sync=SyncConfig.from_dict(data.get("sync")),
            scheduling=SchedulingConfig.from_dict(data.get("scheduling")),
            pipeline=PipelineConfig.from_dict(data.get("pipeline")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class CalendarInfo:
    calendar_id: str
    name: str
    url: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Record:
    """One normalized source item. Owned by the caller, never mutated."""

    record_id: str
    received_at: datetime
    text: str = ""
    subject: str = ""
    sender: str = ""
    permalink: str = ""
    revision: str = ""
    signals: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "revision": self.revision,
            "received_at": serialize_datetime(self.received_at),
            "subject": self.subject,
            "sender": self.sender,
            "permalink": self.permalink,
            "text": self.text,
            "signals": dict(self.signals),
        }

    def provenance(self) -> str:
        """Lines tying a calendar resource back to this record."""
        lines = [
            f"Source: {self.permalink}" if self.permalink else "",
            f"Subject: {self.subject}" if self.subject else "",
            f"From: {self.sender}" if self.sender else "",
            f"Received: {serialize_datetime(self.received_at)}",
        ]
        return "\n".join(line for line in lines if line)

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, default_id: str = "", default_revision: str = "") -> "Record":
        received_raw = data.get("received_at")
        if isinstance(received_raw, date) and not isinstance(received_raw, datetime):
            received_raw = datetime.combine(received_raw, datetime.min.time())
        if isinstance(received_raw, datetime):
            received_at = _ensure_tz(received_raw)
        else:
            received_at = parse_iso_datetime(str(received_raw)) if received_raw else None
        signals = data.get("signals")
        return cls(
            record_id=str(data.get("record_id") or default_id).strip(),
            revision=str(data.get("revision") or default_revision).strip(),
            received_at=received_at or utc_now(),
            subject=str(data.get("subject", "") or "").strip(),
            sender=str(data.get("sender", "") or "").strip(),
            permalink=str(data.get("permalink", "") or "").strip(),
            text=str(data.get("text", "") or ""),
            signals=dict(signals) if isinstance(signals, dict) else {},
        )


@dataclass
class Classification:
    category: Category = Category.INFO
    priority: Priority = Priority.MEDIUM
    needs_attention: bool = False
    reasoning: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "priority": self.priority.value,
            "needs_attention": self.needs_attention,
            "reasoning": self.reasoning,
        }


@dataclass
class ProposedItem:
    kind: ItemKind
    operation: Operation
    title: str
    start: datetime | None = None
    end: datetime | None = None
    deadline: datetime | None = None
    all_day: bool = False
    location: str = ""
    body: str = ""
    confidence: float = DEFAULT_CONFIDENCE
    needs_review: bool = False
    explicit_target_ref: str = ""
    target_key: str = ""
    memo: str = ""
    priority: Priority = Priority.MEDIUM
    index: int = 0
    provenance: str = ""

    def with_updates(self, **kwargs: Any) -> "ProposedItem":
        payload = dict(self.__dict__)
        payload.update(kwargs)
        return ProposedItem(**payload)

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "kind": self.kind.value,
            "operation": self.operation.value,
            "title": self.title,
            "start": serialize_datetime(self.start),
            "end": serialize_datetime(self.end),
            "deadline": serialize_datetime(self.deadline),
            "all_day": self.all_day,
            "location": self.location,
            "confidence": self.confidence,
            "needs_review": self.needs_review,
            "explicit_target_ref": self.explicit_target_ref,
            "target_key": self.target_key,
            "priority": self.priority.value,
        }


@dataclass
class Plan:
    classification: Classification = field(default_factory=Classification)
    assistant_memo: str = ""
    items: list[ProposedItem] = field(default_factory=list)


@dataclass
class MemoryEntry:
    key: str
    kind: str
    requested_operation: str
    applied_operation: str
    observed_at: datetime
    external_ref: str = ""
    record_id: str = ""
    item_index: int = 0
    title: str = ""
    start: str = ""
    end: str = ""
    deadline: str = ""
    location: str = ""
    memo: str = ""
    needs_review: bool = False
    confidence: float = DEFAULT_CONFIDENCE
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["observed_at"] = serialize_datetime(self.observed_at)
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MemoryEntry":
        return cls(
            key=str(data.get("key", "") or ""),
            kind=str(data.get("kind", "") or ""),
            requested_operation=str(data.get("requested_operation", "") or ""),
            applied_operation=str(data.get("applied_operation", "") or ""),
            observed_at=parse_iso_datetime(data.get("observed_at")) or utc_now(),
            external_ref=str(data.get("external_ref", "") or ""),
            record_id=str(data.get("record_id", "") or ""),
            item_index=int(data.get("item_index", 0) or 0),
            title=str(data.get("title", "") or ""),
            start=str(data.get("start", "") or ""),
            end=str(data.get("end", "") or ""),
            deadline=str(data.get("deadline", "") or ""),
            location=str(data.get("location", "") or ""),
            memo=str(data.get("memo", "") or ""),
            needs_review=bool(data.get("needs_review", False)),
            confidence=float(data.get("confidence", DEFAULT_CONFIDENCE) or 0.0),
            error=str(data.get("error", "") or ""),
        )


@dataclass
class ItemOutcome:
    item: ProposedItem
    key: str
    applied_operation: str
    external_ref: str = ""
    needs_review: bool = False
    error: str = ""
    chain: list[str] = field(default_factory=list)
    origin: ProposedItem | None = None

    @property
    def requested_operation(self) -> Operation:
        return (self.origin or self.item).operation

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.item.index,
            "key": self.key,
            "kind": self.item.kind.value,
            "requested_operation": self.requested_operation.value,
            "applied_operation": self.applied_operation,
            "external_ref": self.external_ref,
            "title": self.item.title,
            "needs_review": self.needs_review,
            "error": self.error,
            "chain": list(self.chain),
        }


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    changes_applied: int
    needs_review: int
    trigger: str
    record_id: str = ""
    outcomes: list[ItemOutcome] = field(default_factory=list)
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "changes_applied": self.changes_applied,
            "needs_review": self.needs_review,
            "trigger": self.trigger,
            "record_id": self.record_id,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
            "run_at": serialize_datetime(self.run_at),
        }
