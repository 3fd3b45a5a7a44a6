from __future__ import annotations


class CadenceError(RuntimeError):
    """Base class for errors raised by the sync and deadline engine."""


class ProviderError(CadenceError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CursorExpired(ProviderError):
    """The provider no longer accepts the stored sync cursor (HTTP 410)."""

    def __init__(self, message: str = "Sync cursor expired. Full sync required.") -> None:
        super().__init__(message, status_code=410)


class PerEventApplyError(CadenceError):
    def __init__(self, external_id: str, reason: str) -> None:
        super().__init__(f"Failed to process event {external_id}: {reason}")
        self.external_id = external_id
        self.reason = reason


class DefinitionMissing(CadenceError):
    def __init__(self, kind: str, definition_id: str) -> None:
        super().__init__(f"Recurring definition not found: {kind}/{definition_id}")
        self.kind = kind
        self.definition_id = definition_id


class TaskNotFound(CadenceError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class CalendarNotFound(CadenceError):
    def __init__(self, calendar_id: str) -> None:
        super().__init__(f"Calendar not found: {calendar_id}")
        self.calendar_id = calendar_id
