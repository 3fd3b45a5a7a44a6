from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from cadence.deadline_calculator import DeadlineCalculator
from cadence.errors import DefinitionMissing, TaskNotFound
from cadence.models import (
    LINK_KIND_CALENDAR,
    LINK_KIND_TIMETABLE,
    LINK_KINDS,
    STATE_NOT_STARTED,
    TASK_TYPE_DEADLINE,
    AdvanceResult,
    EventLink,
    LinkedTask,
    LocalEvent,
    Occurrence,
    RecalculateResult,
    TimeBlock,
    normalize_offset_policy,
    utc_now,
)
from cadence.occurrence_resolver import OccurrenceResolver
from cadence.state_store import StateStore

logger = logging.getLogger(__name__)


def _check_kind(kind: str) -> str:
    if kind not in LINK_KINDS:
        raise ValueError(f"Unknown link kind: {kind!r}")
    return kind


class EventLinkAdvancer:
    """Keeps event-linked deadline tasks pinned to their definition's occurrences."""

    def __init__(
        self,
        store: StateStore,
        resolver: OccurrenceResolver,
        calculator: DeadlineCalculator,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.calculator = calculator
        self._clock = clock or utc_now

    def _load_definition(self, kind: str, definition_id: str) -> LocalEvent | TimeBlock | None:
        if kind == LINK_KIND_CALENDAR:
            return self.store.get_event_by_id(definition_id)
        if kind == LINK_KIND_TIMETABLE:
            return self.store.get_time_block(definition_id)
        raise ValueError(f"Unknown link kind: {kind!r}")

    def _require_task(self, task_id: str) -> LinkedTask:
        task = self.store.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def _instants(self, occurrence: Occurrence, offset: str) -> tuple[datetime, datetime | None]:
        deadline = self.calculator.deadline(
            occurrence.start, occurrence.end, offset, all_day=occurrence.all_day
        )
        available = self.calculator.suggestion_available_from(
            occurrence.end, offset, all_day=occurrence.all_day
        )
        return deadline, available

    def link_task(self, task_id: str, kind: str, definition_id: str, offset: str) -> LinkedTask:
        """Attach a link and derive the first deadline from the next occurrence after now."""
        task = self._require_task(task_id)
        kind = _check_kind(kind)
        offset = normalize_offset_policy(offset)
        definition = self._load_definition(kind, definition_id)
        if definition is None:
            raise DefinitionMissing(kind, definition_id)

        occurrence = self.resolver.next_occurrence(definition, self._clock())
        link = EventLink(kind=kind, definition_id=definition_id, offset=offset)
        updates: dict = {"link": link, "task_type": TASK_TYPE_DEADLINE}
        if occurrence is None:
            logger.info("Definition %s/%s has no upcoming occurrence", kind, definition_id)
            updates.update(deadline=None, suggestion_available_from=None)
        else:
            deadline, available = self._instants(occurrence, offset)
            link.tracked_occurrence_start = occurrence.start
            updates.update(deadline=deadline, suggestion_available_from=available)
        return self.store.save_task(task.with_updates(**updates))

    def advance(self, task_id: str) -> AdvanceResult:
        task = self._require_task(task_id)
        if task.task_type != TASK_TYPE_DEADLINE or task.link is None:
            return AdvanceResult(task_id=task_id, advanced=False)

        link = task.link
        definition = self._load_definition(link.kind, link.definition_id)
        if definition is None:
            logger.warning(
                "Definition %s/%s for task %s no longer exists", link.kind, link.definition_id, task_id
            )
            self.recalculate(link.kind, link.definition_id)
            return AdvanceResult(task_id=task_id, advanced=False, orphaned=True)

        after = link.tracked_occurrence_start or self._clock()
        occurrence = self.resolver.next_occurrence(definition, after)
        if occurrence is None:
            logger.info("Task %s has no further occurrence after %s", task_id, after.isoformat())
            return AdvanceResult(task_id=task_id, advanced=False)

        deadline, available = self._instants(occurrence, link.offset)
        advanced = task.with_updates(
            deadline=deadline,
            link=EventLink(
                kind=link.kind,
                definition_id=link.definition_id,
                offset=link.offset,
                tracked_occurrence_start=occurrence.start,
            ),
            suggestion_available_from=available,
            completion_state=STATE_NOT_STARTED,
            accepted_slots=[],
            rejected_today=False,
            last_completed_day="",
            actual_durations=[],
            prior_state=task.snapshot(),
        )
        self.store.save_task(advanced)
        return AdvanceResult(
            task_id=task_id,
            advanced=True,
            new_deadline=deadline,
            new_tracked_occurrence=occurrence.start,
            new_suggestion_available_from=available,
        )

    def undo_advance(self, task_id: str) -> LinkedTask:
        task = self._require_task(task_id)
        prior = task.prior_state
        if prior is None:
            return task
        link = task.link
        if link is not None:
            link = EventLink(
                kind=link.kind,
                definition_id=link.definition_id,
                offset=link.offset,
                tracked_occurrence_start=prior.tracked_occurrence_start,
            )
        restored = task.with_updates(
            deadline=prior.deadline,
            link=link,
            suggestion_available_from=prior.suggestion_available_from,
            completion_state=prior.completion_state,
            accepted_slots=list(prior.accepted_slots),
            rejected_today=prior.rejected_today,
            last_completed_day=prior.last_completed_day,
            actual_durations=list(prior.actual_durations),
            prior_state=None,
        )
        return self.store.save_task(restored)

    def recalculate(self, kind: str, definition_id: str) -> RecalculateResult:
        """Re-derive linked tasks after their definition changed or disappeared."""
        kind = _check_kind(kind)
        result = RecalculateResult(kind=kind, definition_id=definition_id)
        definition = self._load_definition(kind, definition_id)

        if definition is None:
            for task in self.store.list_linked_tasks(kind, definition_id, include_completed=True):
                try:
                    self.store.save_task(task.with_updates(link=None))
                except Exception as exc:
                    logger.exception("Failed to orphan task %s", task.id)
                    result.errors.append(f"Failed to orphan task {task.id}: {exc}")
                    continue
                result.orphaned_task_ids.append(task.id)
            if result.orphaned_task_ids:
                logger.info(
                    "Orphaned %d task(s) linked to %s/%s", len(result.orphaned_task_ids), kind, definition_id
                )
            return result

        for task in self.store.list_linked_tasks(kind, definition_id):
            try:
                if self._recalculate_task(task, definition):
                    result.updated += 1
            except Exception as exc:
                logger.exception("Failed to recalculate task %s", task.id)
                result.errors.append(f"Failed to recalculate task {task.id}: {exc}")
        return result

    def _recalculate_task(self, task: LinkedTask, definition: LocalEvent | TimeBlock) -> bool:
        link = task.link
        if link is None:
            return False
        tracked = link.tracked_occurrence_start
        # Back off a day so an occurrence moved slightly earlier is still found.
        after = tracked - timedelta(days=1) if tracked else self._clock()
        occurrence = self.resolver.next_occurrence(definition, after)
        if occurrence is None:
            return False
        deadline, available = self._instants(occurrence, link.offset)
        self.store.save_task(
            task.with_updates(
                deadline=deadline,
                link=EventLink(
                    kind=link.kind,
                    definition_id=link.definition_id,
                    offset=link.offset,
                    tracked_occurrence_start=occurrence.start,
                ),
                suggestion_available_from=available,
            )
        )
        return True
