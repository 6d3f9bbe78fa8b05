import sqlite3
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from agendasync.models import MemoryEntry
from agendasync.state_store import StateStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _entry(key: str, applied: str = "CREATE", *, age_days: float = 0, **extra) -> MemoryEntry:
    return MemoryEntry(
        key=key,
        kind="SCHEDULED_EVENT",
        requested_operation="CREATE",
        applied_operation=applied,
        observed_at=NOW - timedelta(days=age_days),
        **extra,
    )


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_append_and_read_window_preserves_order(self) -> None:
        count = self.store.append_memory_entries(
            [
                _entry("a", age_days=10, external_ref="ev-a"),
                _entry("b", age_days=2, start="2026-02-27T09:00:00+00:00", needs_review=True),
                _entry("c", age_days=1, title="Seminar", confidence=0.9),
            ]
        )
        self.assertEqual(count, 3)
        entries = self.store.read_memory_window(NOW - timedelta(days=5))
        self.assertEqual([entry.key for entry in entries], ["b", "c"])
        self.assertEqual(entries[0].start, "2026-02-27T09:00:00+00:00")
        self.assertTrue(entries[0].needs_review)
        self.assertEqual(entries[1].title, "Seminar")
        self.assertEqual(entries[1].confidence, 0.9)

    def test_read_window_cap_keeps_newest_and_warns(self) -> None:
        self.store.append_memory_entries([_entry(f"k{i}") for i in range(5)])
        with self.assertLogs("agendasync.state_store", level="WARNING"):
            entries = self.store.read_memory_window(NOW - timedelta(days=1), limit=2)
        self.assertEqual([entry.key for entry in entries], ["k3", "k4"])

    def test_stale_rows_do_not_consume_the_cap(self) -> None:
        self.store.append_memory_entries([_entry("k1", age_days=1), _entry("k2", age_days=1)])
        self.store.append_memory_entries([_entry(f"old{i}", age_days=10) for i in range(3)])
        entries = self.store.read_memory_window(NOW - timedelta(days=5), limit=2)
        self.assertEqual([entry.key for entry in entries], ["k1", "k2"])

    def test_window_compares_instants_across_offsets(self) -> None:
        cst = timezone(timedelta(hours=8))
        self.store.append_memory_entries(
            [
                MemoryEntry(
                    key="local",
                    kind="SCHEDULED_EVENT",
                    requested_operation="CREATE",
                    applied_operation="CREATE",
                    observed_at=NOW.astimezone(cst),
                )
            ]
        )
        self.assertEqual([e.key for e in self.store.read_memory_window(NOW - timedelta(minutes=1))], ["local"])
        self.assertEqual(self.store.read_memory_window(NOW + timedelta(minutes=1)), [])

    def test_append_is_all_or_nothing(self) -> None:
        bad = _entry("bad", title=object())
        with self.assertRaises(sqlite3.Error):
            self.store.append_memory_entries([_entry("good"), bad])
        self.assertEqual(self.store.recent_memory_entries(limit=10), [])

    def test_append_nothing(self) -> None:
        self.assertEqual(self.store.append_memory_entries([]), 0)

    def test_recent_entries_filter_and_review(self) -> None:
        self.store.append_memory_entries(
            [
                _entry("a", "CREATE"),
                _entry("b", "SKIP_DUPLICATE"),
                _entry("c", "ERROR", error="AdapterError: boom", needs_review=True),
                _entry("d", "SKIP_NO_TARGET", needs_review=True),
            ]
        )
        self.assertEqual([item["key"] for item in self.store.recent_memory_entries(limit=10)], ["d", "c", "b", "a"])
        created = self.store.recent_memory_entries(limit=10, applied_operation="CREATE")
        self.assertEqual([item["key"] for item in created], ["a"])
        review = self.store.review_entries(limit=10)
        self.assertEqual([item["key"] for item in review], ["d", "c"])
        self.assertEqual(review[1]["error"], "AdapterError: boom")

    def test_clear_memory(self) -> None:
        self.store.append_memory_entries([_entry("a"), _entry("b")])
        self.assertEqual(self.store.clear_memory(), 2)
        self.assertEqual(self.store.recent_memory_entries(), [])

    def test_sync_runs_and_meta(self) -> None:
        run_id = self.store.record_sync_run(
            trigger="manual",
            status="success",
            message="ok",
            duration_ms=12,
            changes_applied=1,
            needs_review=0,
            record_id="r1",
        )
        runs = self.store.recent_sync_runs(limit=5)
        self.assertEqual(runs[0]["id"], run_id)
        self.assertEqual(runs[0]["record_id"], "r1")

        self.assertIsNone(self.store.get_meta("record:r1:revision"))
        self.store.set_meta("record:r1:revision", "v1")
        self.store.set_meta("record:r1:revision", "v2")
        self.assertEqual(self.store.get_meta("record:r1:revision"), "v2")
        self.assertTrue(self.store.delete_meta("record:r1:revision"))
        self.assertFalse(self.store.delete_meta("record:r1:revision"))


if __name__ == "__main__":
    unittest.main()
