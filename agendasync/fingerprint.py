from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone

from agendasync.models import ProposedItem

KEY_LENGTH = 16
MAX_NORMALIZED_CHARS = 200


def normalize_text(value: str | None) -> str:
    collapsed = re.sub(r"\s+", " ", str(value or "").strip())
    return collapsed.casefold()[:MAX_NORMALIZED_CHARS]


def _instant(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def time_bucket(item: ProposedItem) -> str:
    if item.start is not None:
        end = _instant(item.end) if item.end is not None else ""
        return f"{_instant(item.start)}/{end}"
    if item.deadline is not None:
        return _instant(item.deadline)
    return ""


def fingerprint(item: ProposedItem) -> str:
    payload = "|".join(
        (
            normalize_text(item.kind.value),
            normalize_text(item.title),
            time_bucket(item),
            normalize_text(item.location),
        )
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def compute_key(item: ProposedItem) -> str:
    return fingerprint(item)[:KEY_LENGTH]
