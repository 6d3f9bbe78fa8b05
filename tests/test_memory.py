import unittest
from datetime import datetime, timedelta, timezone

from agendasync.memory import build_memory_index
from agendasync.models import ItemKind, MemoryEntry

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _entry(key: str, applied: str, *, ref: str = "", age_days: float = 1, kind: str = "SCHEDULED_EVENT", memo: str = "") -> MemoryEntry:
    return MemoryEntry(
        key=key,
        kind=kind,
        requested_operation="CREATE",
        applied_operation=applied,
        observed_at=NOW - timedelta(days=age_days),
        external_ref=ref,
        title=f"title-{key}",
        memo=memo,
    )


class MemoryIndexTests(unittest.TestCase):
    def test_latest_entry_per_key_wins(self) -> None:
        index = build_memory_index(
            [
                _entry("k1", "CREATE", ref="ev-1", age_days=3),
                _entry("k1", "UPDATE", ref="ev-1", age_days=1),
                _entry("k1", "ERROR", ref="ev-1", age_days=2),
            ],
            now=NOW,
            window_days=7,
        )
        self.assertEqual(index.get("k1").applied_operation, "UPDATE")

    def test_ties_resolve_to_later_append(self) -> None:
        index = build_memory_index(
            [_entry("k1", "CREATE", ref="ev-1"), _entry("k1", "SKIP_DUPLICATE", ref="ev-1")],
            now=NOW,
            window_days=7,
        )
        self.assertEqual(index.get("k1").applied_operation, "SKIP_DUPLICATE")

    def test_entries_outside_window_are_invisible(self) -> None:
        index = build_memory_index(
            [_entry("old", "CREATE", ref="ev-1", age_days=10), _entry("future", "CREATE", ref="ev-2", age_days=-1)],
            now=NOW,
            window_days=7,
        )
        self.assertIsNone(index.get("old"))
        self.assertIsNone(index.get("future"))
        self.assertEqual(len(index), 0)

    def test_sentinel_entries_are_not_indexed(self) -> None:
        index = build_memory_index([_entry("", "NO_ITEMS", memo="nothing to do")], now=NOW, window_days=7)
        self.assertEqual(len(index), 0)
        self.assertEqual(len(index.snapshot()["memo_hints"]), 1)

    def test_cancel_retires_reference_for_every_key(self) -> None:
        index = build_memory_index(
            [
                _entry("k1", "CREATE", ref="ev-1", age_days=2),
                _entry("k2", "CANCEL", ref="ev-1", age_days=1),
            ],
            now=NOW,
            window_days=7,
        )
        self.assertFalse(index.is_live(index.get("k1")))
        self.assertEqual(index.live_ref("k1", ItemKind.SCHEDULED_EVENT), "")

    def test_live_ref_requires_matching_kind(self) -> None:
        index = build_memory_index([_entry("k1", "CREATE", ref="task-1", kind="DEADLINE_TASK")], now=NOW, window_days=7)
        self.assertEqual(index.live_ref("k1", ItemKind.DEADLINE_TASK), "task-1")
        self.assertEqual(index.live_ref("k1", ItemKind.SCHEDULED_EVENT), "")

    def test_add_overrides_within_pass(self) -> None:
        index = build_memory_index([], now=NOW, window_days=7)
        index.add(_entry("k1", "CREATE", ref="ev-9", age_days=30))
        self.assertIn("k1", index)
        self.assertEqual(index.live_ref("k1", ItemKind.SCHEDULED_EVENT), "ev-9")

    def test_snapshot_lists_newest_first(self) -> None:
        index = build_memory_index(
            [_entry("a", "CREATE", ref="r-a", age_days=3), _entry("b", "RECORD_ONLY", age_days=1, memo="note b")],
            now=NOW,
            window_days=7,
        )
        snapshot = index.snapshot()
        self.assertEqual(snapshot["window_days"], 7)
        self.assertEqual([item["key"] for item in snapshot["items"]], ["b", "a"])
        self.assertTrue(snapshot["items"][1]["live"])
        self.assertIn("note b", snapshot["memo_hints"][0])


if __name__ == "__main__":
    unittest.main()
