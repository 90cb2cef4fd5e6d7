from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.metrics import observe_action_attempt, observe_action_duration
from app.workflows.errors import ActionError
from app.workflows.executors import ActionExecutorRegistry
from app.workflows.schemas import ActionOutcome, DomainEvent


logger = logging.getLogger("app.workflows.policy")


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, ActionError):
        return exc.transient
    if isinstance(exc, (TimeoutError, httpx.TimeoutException)):
        return True
    # Lost connections and lock timeouts surface as OperationalError.
    return isinstance(exc, OperationalError)


@dataclass
class ExecutionReport:
    outcome: str
    action_results: list[ActionOutcome] = field(default_factory=list)

    def as_json(self) -> list[dict[str, Any]]:
        return [item.model_dump(mode="json") for item in self.action_results]


class ExecutionPolicy:
    """Runs one workflow's actions in order and stops at the first failure.

    Every successful action is committed on its own: earlier side effects are
    never rolled back by a later failure, and a failed attempt is rolled back
    before it is retried or reported.
    """

    def __init__(
        self,
        registry: ActionExecutorRegistry,
        *,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        settings = get_settings()
        self.registry = registry
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.workflow_action_max_attempts)
        self.backoff_seconds = max(
            0.0,
            backoff_seconds if backoff_seconds is not None else settings.workflow_action_retry_backoff_seconds,
        )
        self.sleep = sleep

    def run(
        self,
        session: Session,
        workflow_id: str,
        actions: list[Mapping[str, Any]],
        event: DomainEvent,
    ) -> ExecutionReport:
        results: list[ActionOutcome] = []
        failed_at: int | None = None

        for index, action in enumerate(actions):
            kind = str(action.get("type") or "")
            if failed_at is not None:
                results.append(ActionOutcome(index=index, kind=kind, status="skipped"))
                continue

            config = action.get("config") if isinstance(action.get("config"), Mapping) else {}
            outcome = self._run_action(session, workflow_id, index, kind, config, event)
            results.append(outcome)
            if outcome.status == "failed":
                failed_at = index

        if failed_at is None:
            return ExecutionReport(outcome="succeeded", action_results=results)
        if failed_at == 0:
            return ExecutionReport(outcome="failed", action_results=results)
        return ExecutionReport(outcome="partially_failed", action_results=results)

    def _run_action(
        self,
        session: Session,
        workflow_id: str,
        index: int,
        kind: str,
        config: Mapping[str, Any],
        event: DomainEvent,
    ) -> ActionOutcome:
        started = time.perf_counter()
        log_fields: dict[str, Any] = {
            "workflow_id": workflow_id,
            "action_index": index,
            "action_kind": kind,
            "max_attempts": self.max_attempts,
        }
        try:
            attempt = 0
            while True:
                attempt += 1
                try:
                    executor = self.registry.get(kind)
                    detail = executor.execute(session, config, event)
                    session.commit()
                except Exception as exc:
                    session.rollback()
                    transient = is_transient(exc)
                    observe_action_attempt(kind or "unknown", "transient_error" if transient else "error")

                    if transient and attempt < self.max_attempts:
                        logger.warning(
                            "workflow.action.retry",
                            extra={**log_fields, "attempt": attempt, "transient": True, "error": str(exc)},
                        )
                        if self.backoff_seconds:
                            self.sleep(self.backoff_seconds * attempt)
                        continue

                    logger.warning(
                        "workflow.action.failed",
                        exc_info=not isinstance(exc, ActionError),
                        extra={**log_fields, "attempt": attempt, "transient": transient, "error": str(exc)},
                    )
                    return ActionOutcome(
                        index=index,
                        kind=kind,
                        status="failed",
                        attempts=attempt,
                        error=str(exc) or exc.__class__.__name__,
                        transient=transient,
                        detail=exc.detail if isinstance(exc, ActionError) else {},
                    )

                observe_action_attempt(kind, "succeeded")
                logger.info("workflow.action.succeeded", extra={**log_fields, "attempt": attempt})
                return ActionOutcome(
                    index=index,
                    kind=kind,
                    status="succeeded",
                    attempts=attempt,
                    detail=detail or {},
                )
        finally:
            observe_action_duration(kind or "unknown", time.perf_counter() - started)
