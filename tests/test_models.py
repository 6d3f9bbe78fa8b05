import json
import unittest
from datetime import date, datetime, timezone

from agendasync.models import (
    AIConfig,
    AppConfig,
    ItemKind,
    MemoryEntry,
    Operation,
    PipelineConfig,
    ProposedItem,
    Record,
    SchedulingConfig,
    SyncConfig,
)
from agendasync.planner import SYSTEM_PROMPT, build_messages, build_planning_payload


class ModelsTests(unittest.TestCase):
    def test_ai_config_defaults_openai_base_url(self) -> None:
        cfg = AIConfig.from_dict({})
        self.assertEqual(cfg.base_url, "https://api.openai.com/v1")
        self.assertEqual(cfg.model, "gpt-4o-mini")
        self.assertEqual(AIConfig.from_dict({"temperature": "hot"}).temperature, 0.2)

    def test_config_sections_are_clamped(self) -> None:
        self.assertEqual(SyncConfig.from_dict({"interval_seconds": 5}).interval_seconds, 30)
        self.assertEqual(PipelineConfig.from_dict({"max_items_per_pass": 0}).max_items_per_pass, 1)
        self.assertEqual(
            SchedulingConfig.from_dict({"default_deadline_local_time": "5pm"}).default_deadline_local_time,
            "17:00",
        )

    def test_app_config_round_trip_keeps_sections(self) -> None:
        cfg = AppConfig.from_dict({"caldav": {"base_url": "https://dav.example.com", "username": "u"}})
        self.assertTrue(cfg.caldav.is_configured())
        self.assertEqual(set(cfg.to_dict()), {"caldav", "ai", "sync", "scheduling", "pipeline"})

    def test_record_from_dict_accepts_yaml_dates(self) -> None:
        record = Record.from_dict({"received_at": date(2026, 1, 10), "signals": ["bad"]}, default_id="file-1")
        self.assertEqual(record.record_id, "file-1")
        self.assertEqual(record.received_at, datetime(2026, 1, 10, tzinfo=timezone.utc))
        self.assertEqual(record.signals, {})

    def test_memory_entry_from_dict_tolerates_nulls(self) -> None:
        entry = MemoryEntry.from_dict(
            {
                "key": "k1",
                "kind": "NOTE",
                "applied_operation": "RECORD_ONLY",
                "observed_at": "2026-01-10T08:00:00Z",
                "memo": None,
                "item_index": None,
            }
        )
        self.assertEqual(entry.memo, "")
        self.assertEqual(entry.item_index, 0)
        self.assertEqual(entry.observed_at.tzinfo, timezone.utc)

    def test_with_updates_returns_copy(self) -> None:
        item = ProposedItem(kind=ItemKind.SCHEDULED_EVENT, operation=Operation.CREATE, title="Seminar")
        derived = item.with_updates(kind=ItemKind.DEADLINE_TASK)
        self.assertEqual(item.kind, ItemKind.SCHEDULED_EVENT)
        self.assertEqual(derived.title, "Seminar")


class PlannerPayloadTests(unittest.TestCase):
    def test_messages_carry_record_and_memory(self) -> None:
        record = Record(record_id="r1", received_at=datetime(2026, 1, 10, tzinfo=timezone.utc), text="x" * 200000)
        payload = build_planning_payload(
            record=record,
            memory_snapshot={"window_days": 62, "items": [], "memo_hints": []},
            timezone="Asia/Shanghai",
            now=datetime(2026, 1, 10, 12, tzinfo=timezone.utc),
        )
        messages = build_messages(payload)
        self.assertEqual(messages[0]["content"], SYSTEM_PROMPT)
        body = json.loads(messages[1]["content"])
        self.assertEqual(body["record"]["record_id"], "r1")
        self.assertEqual(body["memory"]["window_days"], 62)
        self.assertEqual(body["timezone"], "Asia/Shanghai")
        self.assertEqual(len(body["record"]["text"]), 120000)


if __name__ == "__main__":
    unittest.main()
