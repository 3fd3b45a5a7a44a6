import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from cadence.models import (
    STATE_COMPLETED,
    EventLink,
    LinkedTask,
    LocalEvent,
    SyncCursor,
    TaskPriorState,
    TimeBlock,
    TimetableConfig,
)
from cadence.state_store import StateStore


def _event(external_id: str = "e1", title: str = "Standup") -> LocalEvent:
    return LocalEvent(
        user_id="u1",
        calendar_id="primary",
        external_id=external_id,
        title=title,
        start=datetime(2025, 1, 6, 10, tzinfo=timezone.utc),
        end=datetime(2025, 1, 6, 10, 15, tzinfo=timezone.utc),
        etag="v1",
    )


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_upsert_event_by_identity(self) -> None:
        stored, created = self.store.upsert_event(_event())
        self.assertTrue(created)
        self.assertTrue(stored.id)

        again, created_again = self.store.upsert_event(_event(title="Daily standup").with_updates(etag="v2"))
        self.assertFalse(created_again)
        self.assertEqual(again.id, stored.id)

        events = self.store.list_events("u1")
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].title, "Daily standup")
        self.assertEqual(events[0].etag, "v2")
        self.assertEqual(events[0].start, datetime(2025, 1, 6, 10, tzinfo=timezone.utc))

    def test_same_external_id_in_other_calendar_is_distinct(self) -> None:
        self.store.upsert_event(_event())
        self.store.upsert_event(_event().with_updates(calendar_id="team"))
        self.assertEqual(len(self.store.list_events("u1")), 2)
        self.assertEqual(len(self.store.list_events("u1", "team")), 1)

    def test_delete_event(self) -> None:
        stored, _ = self.store.upsert_event(_event())
        removed = self.store.delete_event("u1", "primary", "e1")
        self.assertEqual(removed.id, stored.id)
        self.assertIsNone(self.store.get_event_by_id(stored.id))
        self.assertIsNone(self.store.delete_event("u1", "primary", "e1"))

    def test_cursor_persist_and_clear(self) -> None:
        self.assertIsNone(self.store.read_cursor("u1", "primary"))
        self.store.persist_cursor("u1", "primary", SyncCursor(token="sync-1"))
        self.assertEqual(self.store.read_cursor("u1", "primary").token, "sync-1")
        self.store.persist_cursor("u1", "primary", None)
        self.assertIsNone(self.store.read_cursor("u1", "primary"))

    def test_calendar_error_bookkeeping(self) -> None:
        self.store.upsert_calendar_sync(user_id="u1", calendar_id="primary", name="Me")
        self.store.mark_calendar_failed("u1", "primary", "HTTP 500")
        self.store.mark_calendar_failed("u1", "primary", "HTTP 503")
        sync = self.store.get_calendar_sync("u1", "primary")
        self.assertEqual(sync.error_count, 2)
        self.assertEqual(sync.last_error, "HTTP 503")

        self.store.mark_calendar_synced("u1", "primary", [])
        sync = self.store.get_calendar_sync("u1", "primary")
        self.assertEqual(sync.error_count, 0)
        self.assertEqual(sync.last_error, "")
        self.assertIsNotNone(sync.last_sync_at)

    def test_list_calendar_syncs_filters_disabled(self) -> None:
        self.store.upsert_calendar_sync(user_id="u1", calendar_id="primary", name="Me")
        self.store.upsert_calendar_sync(user_id="u1", calendar_id="holidays", name="Holidays", sync_enabled=False)
        self.assertEqual([item.calendar_id for item in self.store.list_calendar_syncs()], ["primary"])
        self.assertEqual(len(self.store.list_calendar_syncs(enabled_only=False)), 2)

    def test_sync_runs_and_audit(self) -> None:
        run_id = self.store.start_sync_run(trigger="manual", user_id="u1", calendar_id="primary")
        self.store.finish_sync_run(run_id=run_id, mode="full", status="success", message="ok", duration_ms=12, created=3)
        self.store.record_audit_event(calendar_id="primary", uid="sync", action="run_error", details={"a": 1}, run_id=run_id)
        runs = self.store.recent_sync_runs()
        self.assertEqual(runs[0]["status"], "success")
        self.assertEqual(runs[0]["created"], 3)
        self.assertEqual(self.store.recent_audit_events()[0]["details"], {"a": 1})

    def test_time_block_carries_user_timetable(self) -> None:
        self.store.set_timetable_config("u1", TimetableConfig(cell_minutes=45, timezone="Europe/Paris"))
        block = self.store.upsert_time_block(TimeBlock(id="", user_id="u1", day_of_week=2, slot_index=1))
        loaded = self.store.get_time_block(block.id)
        self.assertEqual(loaded.day_of_week, 2)
        self.assertEqual(loaded.config.cell_minutes, 45)
        self.assertEqual(loaded.config.timezone, "Europe/Paris")
        self.assertTrue(self.store.delete_time_block(block.id))
        self.assertIsNone(self.store.get_time_block(block.id))

    def test_save_task_round_trip(self) -> None:
        tracked = datetime(2025, 1, 6, 9, tzinfo=timezone.utc)
        saved = self.store.save_task(
            LinkedTask(
                id="",
                user_id="u1",
                title="Homework",
                link=EventLink(kind="timetable", definition_id="b1", offset="1_day_after", tracked_occurrence_start=tracked),
                accepted_slots=["slot-a"],
                actual_durations=[30],
                prior_state=TaskPriorState(completion_state=STATE_COMPLETED),
            )
        )
        loaded = self.store.get_task(saved.id)
        self.assertEqual(loaded.link.tracked_occurrence_start, tracked)
        self.assertEqual(loaded.link.offset, "1_day_after")
        self.assertEqual(loaded.accepted_slots, ["slot-a"])
        self.assertEqual(loaded.actual_durations, [30])
        self.assertEqual(loaded.prior_state.completion_state, STATE_COMPLETED)

    def test_list_linked_tasks_skips_completed(self) -> None:
        link = EventLink(kind="calendar", definition_id="ev-1", offset="same_day_after")
        self.store.save_task(LinkedTask(id="t1", user_id="u1", link=link))
        self.store.save_task(LinkedTask(id="t2", user_id="u1", link=link, completion_state=STATE_COMPLETED))
        self.store.save_task(LinkedTask(id="t3", user_id="u1"))
        self.assertEqual([task.id for task in self.store.list_linked_tasks("calendar", "ev-1")], ["t1"])
        self.assertEqual(
            [task.id for task in self.store.list_linked_tasks("calendar", "ev-1", include_completed=True)],
            ["t1", "t2"],
        )
        self.assertTrue(self.store.has_linked_tasks("calendar", "ev-1"))
        self.assertFalse(self.store.has_linked_tasks("timetable", "ev-1"))


if __name__ == "__main__":
    unittest.main()
