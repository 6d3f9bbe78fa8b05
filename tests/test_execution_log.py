import unittest
from datetime import datetime, timezone
from unittest import mock

from agendasync.execution_log import ExecutionLogWriter, entry_from_outcome
from agendasync.models import Classification, ItemKind, ItemOutcome, Operation, Plan, ProposedItem, Record

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
RECORD = Record(record_id="r1", received_at=NOW, subject="Lab notice")


def _outcome(index: int, applied: str, kind: ItemKind = ItemKind.SCHEDULED_EVENT, **item_fields) -> ItemOutcome:
    item = ProposedItem(kind=kind, operation=Operation.CREATE, title=f"item {index}", index=index, **item_fields)
    return ItemOutcome(item=item, key=f"k{index}", applied_operation=applied, chain=[applied])


class ExecutionLogWriterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = mock.Mock()
        self.writer = ExecutionLogWriter(self.store)

    def test_one_entry_per_non_none_outcome_in_item_order(self) -> None:
        outcomes = [_outcome(3, "CREATE"), _outcome(1, "SKIP_DUPLICATE"), _outcome(2, "NONE", ItemKind.DISCARD)]
        entries = self.writer.write(RECORD, Plan(), outcomes, observed_at=NOW)
        self.assertEqual([entry.item_index for entry in entries], [1, 3])
        self.assertTrue(all(entry.record_id == "r1" and entry.observed_at == NOW for entry in entries))
        self.store.append_memory_entries.assert_called_once_with(entries)

    def test_sentinel_when_nothing_to_record(self) -> None:
        plan = Plan(classification=Classification(reasoning="newsletter"), assistant_memo="")
        entries = self.writer.write(RECORD, plan, [_outcome(1, "NONE", ItemKind.DISCARD)], observed_at=NOW)
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].applied_operation, "NO_ITEMS")
        self.assertEqual(entries[0].key, "")
        self.assertEqual(entries[0].memo, "newsletter")

    def test_sentinel_for_empty_plan_prefers_assistant_memo(self) -> None:
        entries = self.writer.build_entries(RECORD, Plan(assistant_memo="nothing actionable"), [], observed_at=NOW)
        self.assertEqual(entries[0].memo, "nothing actionable")
        self.store.append_memory_entries.assert_not_called()

    def test_note_body_becomes_memo(self) -> None:
        entry = entry_from_outcome(
            _outcome(1, "RECORD_ONLY", ItemKind.NOTE, body="Library closes early on Friday."),
            record_id="r1",
            observed_at=NOW,
        )
        self.assertEqual(entry.memo, "Library closes early on Friday.")
        self.assertEqual(entry.kind, "NOTE")

    def test_fallback_entry_records_original_request(self) -> None:
        origin = ProposedItem(kind=ItemKind.SCHEDULED_EVENT, operation=Operation.UPDATE, title="Reminder", index=4)
        derived = origin.with_updates(kind=ItemKind.DEADLINE_TASK, operation=Operation.CREATE, deadline=NOW)
        outcome = ItemOutcome(
            item=derived,
            key="task-key",
            applied_operation="FALLBACK_TASK_CREATE",
            external_ref="task-1",
            chain=["SKIP_NO_TIME", "FALLBACK_TASK_CREATE"],
            origin=origin,
        )
        entry = entry_from_outcome(outcome, record_id="r1", observed_at=NOW)
        self.assertEqual(entry.kind, "DEADLINE_TASK")
        self.assertEqual(entry.requested_operation, "UPDATE")
        self.assertEqual(entry.deadline, NOW.isoformat())
        self.assertEqual(entry.external_ref, "task-1")


if __name__ == "__main__":
    unittest.main()
