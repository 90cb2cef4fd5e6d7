from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.context import reset_dedup_key, set_dedup_key
from app.metrics import observe_dispatch, observe_dispatch_error, observe_workflow_execution, observe_workflow_replay
from app.workflows.errors import InvalidEventError
from app.workflows.executors import ActionExecutorRegistry, WorkflowCollaborators, build_registry, default_collaborators
from app.workflows.idempotency import IdempotencyGuard
from app.workflows.matching import trigger_matches
from app.workflows.models import WorkflowExecution
from app.workflows.policy import ExecutionPolicy
from app.workflows.repository import WorkflowRepository
from app.workflows.schemas import (
    TRIGGER_KINDS,
    ActionOutcome,
    DispatchResult,
    DomainEvent,
    WorkflowDispatchEntry,
)


logger = logging.getLogger("app.workflows.dispatch")
tracer = trace.get_tracer("app.workflows.dispatch")


@dataclass(frozen=True)
class _WorkflowSnapshot:
    id: uuid.UUID
    name: str
    actions: list[dict[str, Any]]


def validate_event(event: DomainEvent | Mapping[str, Any]) -> DomainEvent:
    if not isinstance(event, DomainEvent):
        try:
            event = DomainEvent.model_validate(event)
        except ValidationError as exc:
            raise InvalidEventError("malformed event", details=exc.errors(include_url=False, include_context=False, include_input=False)) from exc

    if event.kind not in TRIGGER_KINDS:
        raise InvalidEventError(f"unknown trigger kind: {event.kind}", details={"allowed": list(TRIGGER_KINDS)})
    if not event.workspace_id.strip():
        raise InvalidEventError("workspace_id is required")
    if not event.dedup_key.strip():
        raise InvalidEventError("dedup_key is required")
    return event


class EventDispatcher:
    """Single entry point that turns a domain event into workflow executions.

    Matching workflows run one after another. A storage failure while
    handling one workflow is reported on that workflow's entry and never stops
    the others; action failures stay inside the workflow's execution record.
    """

    def __init__(
        self,
        *,
        registry: ActionExecutorRegistry | None = None,
        collaborators: WorkflowCollaborators | None = None,
        policy: ExecutionPolicy | None = None,
        repository: WorkflowRepository | None = None,
        guard: IdempotencyGuard | None = None,
    ) -> None:
        if policy is None:
            if registry is None:
                registry = build_registry(collaborators or default_collaborators())
            policy = ExecutionPolicy(registry)
        self.policy = policy
        self.repository = repository or WorkflowRepository()
        self.guard = guard or IdempotencyGuard()

    def dispatch(self, session: Session, event: DomainEvent | Mapping[str, Any]) -> DispatchResult:
        event = validate_event(event)
        observe_dispatch(event.kind)
        result = DispatchResult(event_kind=event.kind, workspace_id=event.workspace_id, dedup_key=event.dedup_key)

        token = set_dedup_key(event.dedup_key)
        try:
            with tracer.start_as_current_span("workflow.dispatch") as span:
                span.set_attribute("workflow.event_kind", event.kind)
                span.set_attribute("workflow.workspace_id", event.workspace_id)
                span.set_attribute("workflow.dedup_key", event.dedup_key)

                try:
                    candidates = self.repository.list_enabled_by_workspace_and_trigger(
                        session,
                        event.workspace_id,
                        event.kind,
                    )
                    matched = [
                        _WorkflowSnapshot(id=item.id, name=item.name, actions=list(item.actions or []))
                        for item in candidates
                        if trigger_matches(item.trigger_type, item.trigger_config, event)
                    ]
                except SQLAlchemyError as exc:
                    session.rollback()
                    observe_dispatch_error("lookup")
                    span.set_status(Status(StatusCode.ERROR, "workflow lookup failed"))
                    logger.error(
                        "workflow.dispatch.lookup_failed",
                        exc_info=True,
                        extra={"event_kind": event.kind, "workspace_id": event.workspace_id, "error": str(exc)},
                    )
                    result.error = "workflow lookup failed"
                    return result

                span.set_attribute("workflow.matched_count", len(matched))
                for workflow in matched:
                    result.entries.append(self._process(session, workflow, event))

                span.set_attribute("workflow.ran_count", result.count("ran"))
                logger.info(
                    "workflow.dispatch.finished",
                    extra={
                        "event_kind": event.kind,
                        "workspace_id": event.workspace_id,
                        "matched_count": len(matched),
                        "ran_count": result.count("ran"),
                        "skipped_count": result.count("skipped"),
                        "errored_count": result.count("errored"),
                    },
                )
                return result
        finally:
            reset_dedup_key(token)

    def _process(self, session: Session, workflow: _WorkflowSnapshot, event: DomainEvent) -> WorkflowDispatchEntry:
        log_fields = {"workflow_id": str(workflow.id), "event_kind": event.kind, "workspace_id": event.workspace_id}
        with tracer.start_as_current_span("workflow.run") as span:
            span.set_attribute("workflow.id", str(workflow.id))
            span.set_attribute("workflow.event_kind", event.kind)
            try:
                existing = self.guard.get_record(session, workflow.id, event.dedup_key)
                if existing is not None:
                    return self._replayed(workflow, existing, event, span)

                execution = self.guard.claim(session, workflow.id, event)
                if execution is None:
                    existing = self.guard.get_record(session, workflow.id, event.dedup_key)
                    if existing is None:
                        raise LookupError("execution claim lost but no record found")
                    return self._replayed(workflow, existing, event, span)
                execution_id = execution.id
            except (SQLAlchemyError, LookupError) as exc:
                return self._errored(session, workflow, event, span, "claim", exc)

            report = self.policy.run(session, str(workflow.id), workflow.actions, event)

            try:
                self.guard.record(session, execution_id, report.outcome, report.as_json())
            except (SQLAlchemyError, LookupError) as exc:
                entry = self._errored(session, workflow, event, span, "record", exc)
                entry.execution_id = execution_id
                entry.action_results = report.action_results
                return entry

            observe_workflow_execution(event.kind, report.outcome)
            span.set_attribute("workflow.outcome", report.outcome)
            if report.outcome != "succeeded":
                span.set_status(Status(StatusCode.ERROR, report.outcome))
            logger.info("workflow.run.finished", extra={**log_fields, "outcome": report.outcome})
            return WorkflowDispatchEntry(
                workflow_id=workflow.id,
                workflow_name=workflow.name,
                status="ran",
                outcome=report.outcome,
                execution_id=execution_id,
                action_results=report.action_results,
            )

    def _replayed(
        self,
        workflow: _WorkflowSnapshot,
        existing: WorkflowExecution,
        event: DomainEvent,
        span: trace.Span,
    ) -> WorkflowDispatchEntry:
        observe_workflow_replay(event.kind)
        span.set_attribute("workflow.replayed", True)
        logger.info(
            "workflow.run.replayed",
            extra={"workflow_id": str(workflow.id), "event_kind": event.kind, "outcome": existing.status},
        )
        return WorkflowDispatchEntry(
            workflow_id=workflow.id,
            workflow_name=workflow.name,
            status="skipped",
            outcome=existing.status,
            execution_id=existing.id,
            action_results=[ActionOutcome.model_validate(item) for item in existing.action_results or []],
        )

    def _errored(
        self,
        session: Session,
        workflow: _WorkflowSnapshot,
        event: DomainEvent,
        span: trace.Span,
        stage: str,
        exc: Exception,
    ) -> WorkflowDispatchEntry:
        session.rollback()
        observe_dispatch_error(stage)
        span.record_exception(exc)
        span.set_status(Status(StatusCode.ERROR, f"{stage} failed"))
        logger.error(
            "workflow.run.storage_error",
            exc_info=True,
            extra={"workflow_id": str(workflow.id), "event_kind": event.kind, "status": stage, "error": str(exc)},
        )
        return WorkflowDispatchEntry(
            workflow_id=workflow.id,
            workflow_name=workflow.name,
            status="errored",
            error=f"{stage} failed: {exc.__class__.__name__}",
        )


_dispatcher: EventDispatcher | None = None


def get_event_dispatcher() -> EventDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = EventDispatcher()
    return _dispatcher


def set_event_dispatcher(dispatcher: EventDispatcher | None) -> None:
    global _dispatcher
    _dispatcher = dispatcher


def dispatch(session: Session, event: DomainEvent | Mapping[str, Any]) -> DispatchResult:
    return get_event_dispatcher().dispatch(session, event)
