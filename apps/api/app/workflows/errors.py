from __future__ import annotations

from typing import Any


class WorkflowError(Exception):
    """Base class for workflow engine failures."""


class InvalidEventError(WorkflowError):
    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ActionError(WorkflowError):
    """Failure raised by an action executor.

    ``transient`` is the only signal the execution policy uses to decide
    whether another attempt is worth making.
    """

    transient = False

    def __init__(self, message: str, *, detail: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class TransientActionError(ActionError):
    transient = True


class PermanentActionError(ActionError):
    transient = False
