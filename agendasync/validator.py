from __future__ import annotations

import math
import re
from datetime import datetime, time, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from agendasync.errors import ValidationError
from agendasync.models import (
    DEFAULT_CONFIDENCE,
    Category,
    Classification,
    ItemKind,
    Operation,
    Plan,
    Priority,
    ProposedItem,
    Record,
)

HARD_MAX_ITEMS = 60
DEFAULT_MAX_ITEMS = 30
MAX_TITLE_CHARS = 120
MAX_LOCATION_CHARS = 300
MAX_BODY_CHARS = 8000
MAX_MEMO_CHARS = 800
MAX_ASSISTANT_MEMO_CHARS = 1200
MAX_REASONING_CHARS = 800
MAX_REF_CHARS = 200
DEFAULT_TITLE = "Untitled item"

DATE_ONLY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _coerce_enum(enum_cls: Any, value: Any, default: Any) -> Any:
    text = str(value or "").strip().upper()
    try:
        return enum_cls(text)
    except ValueError:
        return default


def _cap(value: Any, limit: int) -> str:
    if value is None:
        return ""
    return str(value).strip()[:limit]


def clamp_confidence(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return DEFAULT_CONFIDENCE
    try:
        number = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if math.isnan(number):
        return DEFAULT_CONFIDENCE
    return max(0.0, min(1.0, number))


def resolve_timezone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def parse_item_datetime(value: Any, *, tz: tzinfo, default_time: time) -> datetime:
    """Parse a planner time value; raises ValidationError when unusable."""
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=tz)
    text = str(value or "").strip()
    if not text:
        raise ValidationError("empty time value")
    if DATE_ONLY_PATTERN.match(text):
        try:
            day = datetime.strptime(text, "%Y-%m-%d").date()
        except ValueError as exc:
            raise ValidationError(f"invalid date: {text}") from exc
        return datetime.combine(day, default_time, tzinfo=tz)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(f"invalid datetime: {text}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def _optional_datetime(value: Any, *, tz: tzinfo, default_time: time) -> datetime | None:
    if value is None or value == "":
        return None
    try:
        return parse_item_datetime(value, tz=tz, default_time=default_time)
    except ValidationError:
        return None


def _normalize_classification(raw: Any) -> Classification:
    data = raw if isinstance(raw, dict) else {}
    return Classification(
        category=_coerce_enum(Category, data.get("category"), Category.INFO),
        priority=_coerce_enum(Priority, data.get("priority"), Priority.MEDIUM),
        needs_attention=bool(data.get("needs_attention", False)),
        reasoning=_cap(data.get("reasoning"), MAX_REASONING_CHARS),
    )


def _normalize_item(
    raw: Any,
    *,
    index: int,
    fallback_title: str,
    priority: Priority,
    provenance: str,
    tz: tzinfo,
    default_time: time,
) -> ProposedItem:
    data = raw if isinstance(raw, dict) else {}
    time_block = data.get("time") if isinstance(data.get("time"), dict) else data
    target = data.get("target") if isinstance(data.get("target"), dict) else {}

    kind = _coerce_enum(ItemKind, data.get("kind"), None)
    operation = _coerce_enum(Operation, data.get("operation"), None)
    if kind is None or operation is None:
        kind, operation = ItemKind.NOTE, Operation.SKIP

    explicit_ref = target.get("ref") or data.get("explicit_target_ref")
    target_key = target.get("key") or data.get("target_key")
    needs_review = data.get("needs_review")
    all_day = time_block.get("all_day")

    return ProposedItem(
        index=index,
        kind=kind,
        operation=operation,
        title=_cap(data.get("title"), MAX_TITLE_CHARS) or fallback_title,
        start=_optional_datetime(time_block.get("start"), tz=tz, default_time=default_time),
        end=_optional_datetime(time_block.get("end"), tz=tz, default_time=default_time),
        deadline=_optional_datetime(time_block.get("deadline"), tz=tz, default_time=default_time),
        all_day=all_day if isinstance(all_day, bool) else False,
        location=_cap(data.get("location"), MAX_LOCATION_CHARS),
        body=_cap(data.get("body") or data.get("description"), MAX_BODY_CHARS),
        confidence=clamp_confidence(data.get("confidence")),
        needs_review=needs_review if isinstance(needs_review, bool) else False,
        explicit_target_ref=_cap(explicit_ref, MAX_REF_CHARS),
        target_key=_cap(target_key, MAX_REF_CHARS),
        memo=_cap(data.get("memo"), MAX_MEMO_CHARS),
        priority=_coerce_enum(Priority, data.get("priority"), priority),
        provenance=provenance,
    )


def normalize_plan(
    raw: Any,
    *,
    record: Record | None = None,
    max_items: int = DEFAULT_MAX_ITEMS,
    timezone: str = "UTC",
    default_deadline_time: str = "17:00",
) -> Plan:
    """Turn untrusted planner output into a bounded, typed plan.

    Nothing here raises: malformed fields fall back to safe defaults and
    items beyond the cap are dropped.
    """
    data = raw if isinstance(raw, dict) else {}
    tz = resolve_timezone(timezone)
    try:
        default_time = datetime.strptime(default_deadline_time, "%H:%M").time()
    except ValueError:
        default_time = time(17, 0)

    classification = _normalize_classification(data.get("classification"))
    raw_items = data.get("items")
    if not isinstance(raw_items, list):
        raw_items = []
    limit = max(1, min(HARD_MAX_ITEMS, int(max_items)))
    fallback_title = _cap(record.subject if record else "", MAX_TITLE_CHARS) or DEFAULT_TITLE
    provenance = record.provenance() if record else ""

    items = [
        _normalize_item(
            raw_item,
            index=position + 1,
            fallback_title=fallback_title,
            provenance=provenance,
            priority=classification.priority,
            tz=tz,
            default_time=default_time,
        )
        for position, raw_item in enumerate(raw_items[:limit])
    ]
    return Plan(
        classification=classification,
        assistant_memo=_cap(data.get("assistant_memo"), MAX_ASSISTANT_MEMO_CHARS),
        items=items,
    )
