from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from agendasync.models import Record, serialize_datetime

MAX_RECORD_TEXT_CHARS = 120000

SYSTEM_PROMPT = """You are AgendaSync, an assistant that turns one incoming record into follow-up actions.
Only return JSON in this schema:
{
  "classification": {
    "category": "ACTIONABLE | INFO | PROMO",
    "priority": "HIGH | MEDIUM | LOW",
    "needs_attention": false,
    "reasoning": "string"
  },
  "assistant_memo": "string",
  "items": [
    {
      "kind": "SCHEDULED_EVENT | DEADLINE_TASK | NOTE | DISCARD",
      "operation": "CREATE | UPDATE | CANCEL | SKIP",
      "title": "string",
      "time": {"start": "ISO8601", "end": "ISO8601", "deadline": "ISO8601 or YYYY-MM-DD", "all_day": false},
      "location": "string",
      "body": "string",
      "confidence": 0.0,
      "needs_review": false,
      "target": {"key": "memory key", "ref": "external reference"},
      "memo": "string"
    }
  ]
}

Rules:
1. Memory lists what was already applied. Never CREATE something memory shows as live; use UPDATE or CANCEL
   with target.key (or target.ref) instead.
2. Use SCHEDULED_EVENT only when a concrete start time is known; otherwise use DEADLINE_TASK.
3. Keep titles stable across runs for the same real-world fact.
4. Use NOTE for information worth remembering and DISCARD for nothing to do.
"""


def build_planning_payload(
    *,
    record: Record,
    memory_snapshot: dict[str, Any],
    timezone: str,
    now: datetime,
) -> dict[str, Any]:
    record_payload = record.to_dict()
    record_payload["text"] = record.text[:MAX_RECORD_TEXT_CHARS]
    return {
        "now": serialize_datetime(now),
        "timezone": timezone,
        "record": record_payload,
        "memory": memory_snapshot,
    }


def build_messages(payload: dict[str, Any]) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": json.dumps(payload, ensure_ascii=False)},
    ]
