import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from unittest import mock

from cadence.deadline_calculator import DeadlineCalculator
from cadence.errors import DefinitionMissing, TaskNotFound
from cadence.event_link import EventLinkAdvancer
from cadence.models import (
    STATE_COMPLETED,
    STATE_IN_PROGRESS,
    STATE_NOT_STARTED,
    LinkedTask,
    LocalEvent,
    TimeBlock,
)
from cadence.occurrence_resolver import OccurrenceResolver
from cadence.state_store import StateStore


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class EventLinkAdvancerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        clock = lambda: _utc(2025, 1, 6, 8)  # noqa: E731
        self.advancer = EventLinkAdvancer(
            self.store, OccurrenceResolver(clock=clock), DeadlineCalculator(), clock=clock
        )
        self.block = self.store.upsert_time_block(
            TimeBlock(id="", user_id="u1", day_of_week=0, slot_index=0, title="Math")
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _linked_task(self, task_id: str = "t1", offset: str = "same_day_after") -> LinkedTask:
        self.store.save_task(LinkedTask(id=task_id, user_id="u1", title="Homework"))
        return self.advancer.link_task(task_id, "timetable", self.block.id, offset)

    def test_link_sets_initial_deadline(self) -> None:
        task = self._linked_task()
        self.assertEqual(task.link.tracked_occurrence_start, _utc(2025, 1, 6, 9))
        self.assertEqual(task.deadline, _utc(2025, 1, 6, 23, 59, 59, 999999))
        self.assertEqual(task.suggestion_available_from, _utc(2025, 1, 6, 9, 50))

    def test_link_rejects_unknown_inputs(self) -> None:
        self.store.save_task(LinkedTask(id="t1", user_id="u1"))
        with self.assertRaises(TaskNotFound):
            self.advancer.link_task("nope", "timetable", self.block.id, "same_day_after")
        with self.assertRaises(DefinitionMissing):
            self.advancer.link_task("t1", "timetable", "missing-block", "same_day_after")
        with self.assertRaises(ValueError):
            self.advancer.link_task("t1", "timetable", self.block.id, "fortnight")
        with self.assertRaises(ValueError):
            self.advancer.link_task("t1", "email", self.block.id, "same_day_after")

    def test_advance_moves_to_next_cycle_and_resets_progress(self) -> None:
        task = self._linked_task()
        self.store.save_task(
            task.with_updates(
                completion_state=STATE_COMPLETED,
                accepted_slots=["2025-01-06T10:00:00+00:00"],
                rejected_today=True,
                last_completed_day="2025-01-06",
                actual_durations=[35],
            )
        )

        result = self.advancer.advance("t1")

        self.assertTrue(result.advanced)
        self.assertEqual(result.new_tracked_occurrence, _utc(2025, 1, 13, 9))
        self.assertEqual(result.new_deadline, _utc(2025, 1, 13, 23, 59, 59, 999999))
        self.assertEqual(result.new_suggestion_available_from, _utc(2025, 1, 13, 9, 50))
        stored = self.store.get_task("t1")
        self.assertEqual(stored.completion_state, STATE_NOT_STARTED)
        self.assertEqual(stored.accepted_slots, [])
        self.assertFalse(stored.rejected_today)
        self.assertEqual(stored.last_completed_day, "")
        self.assertEqual(stored.actual_durations, [])
        self.assertEqual(stored.link.tracked_occurrence_start, _utc(2025, 1, 13, 9))
        self.assertEqual(stored.prior_state.completion_state, STATE_COMPLETED)
        self.assertEqual(stored.prior_state.tracked_occurrence_start, _utc(2025, 1, 6, 9))

    def test_advance_twice_keeps_weekly_spacing(self) -> None:
        self._linked_task(offset="1_day_before")
        first = self.advancer.advance("t1")
        second = self.advancer.advance("t1")
        self.assertEqual((second.new_tracked_occurrence - first.new_tracked_occurrence).days, 7)
        self.assertEqual(second.new_deadline, _utc(2025, 1, 19, 23, 59, 59, 999999))
        self.assertIsNone(second.new_suggestion_available_from)

    def test_undo_restores_prior_state(self) -> None:
        task = self._linked_task()
        self.store.save_task(task.with_updates(completion_state=STATE_IN_PROGRESS, actual_durations=[10, 20]))
        self.advancer.advance("t1")

        restored = self.advancer.undo_advance("t1")

        self.assertEqual(restored.completion_state, STATE_IN_PROGRESS)
        self.assertEqual(restored.actual_durations, [10, 20])
        self.assertEqual(restored.deadline, _utc(2025, 1, 6, 23, 59, 59, 999999))
        self.assertEqual(restored.link.tracked_occurrence_start, _utc(2025, 1, 6, 9))
        self.assertIsNone(self.store.get_task("t1").prior_state)

    def test_undo_without_prior_state_is_noop(self) -> None:
        task = self._linked_task()
        self.assertEqual(self.advancer.undo_advance("t1").deadline, task.deadline)

    def test_advance_ignores_unlinked_and_non_deadline_tasks(self) -> None:
        self.store.save_task(LinkedTask(id="plain", user_id="u1"))
        self.assertFalse(self.advancer.advance("plain").advanced)

        task = self._linked_task("habit")
        self.store.save_task(task.with_updates(task_type="habit"))
        result = self.advancer.advance("habit")
        self.assertFalse(result.advanced)
        self.assertEqual(self.store.get_task("habit").link.tracked_occurrence_start, _utc(2025, 1, 6, 9))

    def test_advance_missing_task(self) -> None:
        with self.assertRaises(TaskNotFound):
            self.advancer.advance("ghost")

    def test_advance_with_deleted_definition_orphans(self) -> None:
        self._linked_task()
        self.store.delete_time_block(self.block.id)

        result = self.advancer.advance("t1")

        self.assertFalse(result.advanced)
        self.assertTrue(result.orphaned)
        self.assertIsNone(self.store.get_task("t1").link)

    def test_recalculate_orphans_completed_tasks_too(self) -> None:
        self._linked_task("t1")
        done = self._linked_task("t2")
        self.store.save_task(done.with_updates(completion_state=STATE_COMPLETED))
        self.store.delete_time_block(self.block.id)

        result = self.advancer.recalculate("timetable", self.block.id)

        self.assertTrue(result.orphaned)
        self.assertEqual(sorted(result.orphaned_task_ids), ["t1", "t2"])
        self.assertIsNone(self.store.get_task("t2").link)

    def test_recalculate_follows_moved_definition(self) -> None:
        self._linked_task("t1")
        done = self._linked_task("t2")
        self.store.save_task(done.with_updates(completion_state=STATE_COMPLETED))
        self.store.upsert_time_block(
            TimeBlock(id=self.block.id, user_id="u1", day_of_week=0, slot_index=1, title="Math")
        )

        result = self.advancer.recalculate("timetable", self.block.id)

        self.assertEqual(result.updated, 1)
        self.assertFalse(result.orphaned)
        moved = self.store.get_task("t1")
        self.assertEqual(moved.link.tracked_occurrence_start, _utc(2025, 1, 6, 10))
        self.assertEqual(moved.suggestion_available_from, _utc(2025, 1, 6, 10, 50))
        self.assertEqual(self.store.get_task("t2").link.tracked_occurrence_start, _utc(2025, 1, 6, 9))

    def test_recalculate_isolates_task_failures(self) -> None:
        self._linked_task("t1")
        self._linked_task("t2")
        original_save = self.store.save_task

        def flaky_save(task: Any) -> Any:
            if task.id == "t1":
                raise RuntimeError("locked")
            return original_save(task)

        with mock.patch.object(self.store, "save_task", side_effect=flaky_save):
            result = self.advancer.recalculate("timetable", self.block.id)

        self.assertEqual(result.updated, 1)
        self.assertEqual(result.errors, ["Failed to recalculate task t1: locked"])

    def test_calendar_event_link(self) -> None:
        event, _ = self.store.upsert_event(
            LocalEvent(
                user_id="u1",
                calendar_id="primary",
                external_id="lecture",
                title="Lecture",
                start=_utc(2025, 1, 7, 14),
                end=_utc(2025, 1, 7, 16),
                recurrence_rule="FREQ=WEEKLY;COUNT=3",
            )
        )
        self.store.save_task(LinkedTask(id="t1", user_id="u1"))
        task = self.advancer.link_task("t1", "calendar", event.id, "1-day-after")
        self.assertEqual(task.link.offset, "1_day_after")
        self.assertEqual(task.link.tracked_occurrence_start, _utc(2025, 1, 7, 14))
        self.assertEqual(task.deadline, _utc(2025, 1, 8, 23, 59, 59, 999999))
        self.assertEqual(task.suggestion_available_from, _utc(2025, 1, 8))

        self.assertEqual(self.advancer.advance("t1").new_tracked_occurrence, _utc(2025, 1, 14, 14))
        self.assertEqual(self.advancer.advance("t1").new_tracked_occurrence, _utc(2025, 1, 21, 14))
        self.assertFalse(self.advancer.advance("t1").advanced)

    def test_recalculate_unknown_kind(self) -> None:
        with self.assertRaises(ValueError):
            self.advancer.recalculate("email", "x")


if __name__ == "__main__":
    unittest.main()
