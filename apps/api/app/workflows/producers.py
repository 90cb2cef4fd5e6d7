from __future__ import annotations

import logging
import uuid
from datetime import date, timedelta
from typing import Any, Protocol

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from app import events
from app.core.config import get_settings
from app.crm.models import Client, Invoice, Task
from app.workflows.repository import WorkflowRepository
from app.workflows.schemas import DispatchResult, DomainEvent, DueDateScanResult


logger = logging.getLogger("app.workflows.producers")

TRIGGER_TOPICS: dict[str, str] = {
    "invoice_paid": "crm.invoice.paid",
    "funnel_step_completed": "funnel.step.completed",
    "new_client_created": "crm.client.created",
    "due_date_approaching": "crm.task.due_date_approaching",
    "task_completed": "crm.task.completed",
}
TOPIC_TRIGGERS: dict[str, str] = {topic: kind for kind, topic in TRIGGER_TOPICS.items()}


class Dispatcher(Protocol):
    def dispatch(self, session: Session, event: DomainEvent) -> DispatchResult: ...


def invoice_paid_event(invoice: Invoice) -> DomainEvent:
    return DomainEvent(
        kind="invoice_paid",
        workspace_id=invoice.workspace_id,
        dedup_key=f"invoice:{invoice.id}:paid",
        payload={
            "invoice_id": invoice.id,
            "invoice_number": invoice.invoice_number,
            "client_id": invoice.client_id,
            "amount": str(invoice.amount),
            "currency": invoice.currency,
        },
    )


def client_created_event(client: Client) -> DomainEvent:
    return DomainEvent(
        kind="new_client_created",
        workspace_id=client.workspace_id,
        dedup_key=f"client:{client.id}:created",
        payload={
            "client_id": client.id,
            "client_name": client.name,
            "client_email": client.email,
            "source": client.source,
        },
    )


def task_completed_event(task: Task) -> DomainEvent:
    return DomainEvent(
        kind="task_completed",
        workspace_id=task.workspace_id,
        dedup_key=f"task:{task.id}:completed",
        payload={
            "task_id": task.id,
            "task_title": task.title,
            "client_id": task.client_id,
            "assigned_user_id": task.assigned_to_user_id,
        },
    )


def funnel_step_completed_event(
    workspace_id: str,
    funnel_id: str,
    session_id: str,
    step_index: int,
    step_type: str | None = None,
    *,
    client_id: str | None = None,
    client_email: str | None = None,
    data: dict[str, Any] | None = None,
) -> DomainEvent:
    payload: dict[str, Any] = dict(data or {})
    payload.update({"funnel_id": funnel_id, "session_id": session_id, "step_index": step_index})
    # Unset optionals never mask values submitted with the step data.
    optional = {"step_type": step_type, "client_id": client_id, "client_email": client_email}
    payload.update({key: value for key, value in optional.items() if value is not None})
    return DomainEvent(
        kind="funnel_step_completed",
        workspace_id=workspace_id,
        dedup_key=f"funnel_session:{session_id}:step:{step_index}:completed",
        payload=payload,
    )


def due_date_approaching_event(task: Task, today: date) -> DomainEvent:
    if task.due_date is None:
        raise ValueError("task has no due date")
    return DomainEvent(
        kind="due_date_approaching",
        workspace_id=task.workspace_id,
        dedup_key=f"task:{task.id}:due:{task.due_date.isoformat()}",
        payload={
            "task_id": task.id,
            "task_title": task.title,
            "due_date": task.due_date.isoformat(),
            "days_until_due": (task.due_date - today).days,
            "client_id": task.client_id,
            "assigned_user_id": task.assigned_to_user_id,
        },
    )


def emit(event: DomainEvent) -> None:
    events.publish(
        {
            "event_id": str(uuid.uuid4()),
            "event_type": TRIGGER_TOPICS[event.kind],
            "occurred_at": event.occurred_at.isoformat(),
            "workspace_id": event.workspace_id,
            "dedup_key": event.dedup_key,
            "payload": event.model_dump(mode="json")["payload"],
        }
    )


def event_from_envelope(envelope: dict[str, Any]) -> DomainEvent:
    kind = TOPIC_TRIGGERS.get(str(envelope.get("event_type") or ""))
    if kind is None:
        raise ValueError(f"not a workflow trigger topic: {envelope.get('event_type')}")
    payload = envelope.get("payload") if isinstance(envelope.get("payload"), dict) else {}
    return DomainEvent(
        kind=kind,
        workspace_id=str(envelope.get("workspace_id") or ""),
        dedup_key=str(envelope.get("dedup_key") or ""),
        payload=payload,
    )


def scan_due_dates(session: Session, dispatcher: Dispatcher, *, today: date | None = None) -> DueDateScanResult:
    """Dispatch ``due_date_approaching`` for open tasks inside each workflow's window."""
    settings = get_settings()
    today = today or date.today()
    workflows = WorkflowRepository().list_enabled_by_trigger(session, "due_date_approaching")
    result = DueDateScanResult(scanned_workflows=len(workflows))

    # (workspace, task) pairs already dispatched in this scan
    seen: set[tuple[str, str]] = set()
    windows: list[tuple[str, int, str | None]] = []
    for workflow in workflows:
        config = workflow.trigger_config or {}
        days_before = config.get("days_before")
        if days_before is None:
            days_before = settings.due_date_default_days_before
        task_id = config.get("task_id")
        windows.append((workflow.workspace_id, int(days_before), str(task_id) if task_id else None))

    for workspace_id, days_before, task_id in windows:
        target = today + timedelta(days=days_before)
        stmt = select(Task).where(
            and_(
                Task.workspace_id == workspace_id,
                Task.status != "done",
                Task.due_date.is_not(None),
                Task.due_date >= today,
                Task.due_date <= target,
            )
        )
        if task_id:
            stmt = stmt.where(Task.id == task_id)

        tasks = list(session.scalars(stmt.order_by(Task.due_date.asc(), Task.id.asc())).all())
        for task in tasks:
            if (task.workspace_id, task.id) in seen:
                continue
            seen.add((task.workspace_id, task.id))
            result.tasks_found += 1
            dispatch_result = dispatcher.dispatch(session, due_date_approaching_event(task, today))
            result.results.append(dispatch_result)
            result.triggered_count += dispatch_result.count("ran")

    logger.info(
        "workflow.due_dates.scanned",
        extra={"matched_count": result.tasks_found, "triggered_count": result.triggered_count},
    )
    return result
