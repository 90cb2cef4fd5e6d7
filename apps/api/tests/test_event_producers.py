from __future__ import annotations

from collections.abc import Generator
from datetime import date, timedelta
from decimal import Decimal
from typing import Any

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.core.events import InProcessEventBus
from app.crm.api import get_current_user
from app.crm.models import Client, ClientSpace, Invoice, Message, Task
from app.crm.service import ActorUser, BoardService, ClientService, MessagingService, TaskService
from app.integrations.email import EmailDeliveryError
from app.main import app
from app.workflows.dispatcher import EventDispatcher, get_event_dispatcher
from app.workflows.executors import WorkflowCollaborators
from app.workflows.models import Workflow, WorkflowExecution
from app.workflows.producers import due_date_approaching_event, scan_due_dates


ALL_PERMISSIONS = {
    "crm.clients.read",
    "crm.clients.write",
    "crm.tasks.read",
    "crm.tasks.write",
    "funnels.write",
    "workflows.read",
    "workflows.manage",
}


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("WORKFLOW_DISPATCH_MODE", "inline")
    monkeypatch.delenv("WEBHOOK_SECRET", raising=False)
    monkeypatch.delenv("CRON_SECRET", raising=False)
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()


class FakeEmailSender:
    def __init__(self) -> None:
        self.failures: list[EmailDeliveryError] = []
        self.sent: list[dict[str, str]] = []

    def send(self, recipient: str, subject: str, html: str) -> dict[str, Any]:
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append({"recipient": recipient, "subject": subject, "html": html})
        return {"id": f"msg-{len(self.sent)}"}


@pytest.fixture()
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture()
def dispatcher(email_sender: FakeEmailSender) -> EventDispatcher:
    return EventDispatcher(
        collaborators=WorkflowCollaborators(
            email_sender=email_sender,
            clients=ClientService(),
            tasks=TaskService(),
            boards=BoardService(),
            messaging=MessagingService(bus=InProcessEventBus()),
        )
    )


@pytest.fixture()
def client(db_session: Session, dispatcher: EventDispatcher) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            workspace_id="ws-1",
            workspace_ids=["ws-1"],
            permissions=set(ALL_PERMISSIONS),
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_event_dispatcher] = lambda: dispatcher
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _workflow(db_session: Session, trigger_type: str, actions: list[dict[str, Any]], **config: Any) -> Workflow:
    workflow = Workflow(
        workspace_id="ws-1",
        name=f"{trigger_type} automation",
        trigger_type=trigger_type,
        trigger_config=config,
        actions=actions,
        enabled=True,
    )
    db_session.add(workflow)
    db_session.commit()
    return workflow


def _acme(db_session: Session) -> Client:
    acme = Client(workspace_id="ws-1", name="Acme Studio", email="hello@acme.io")
    db_session.add(acme)
    db_session.flush()
    db_session.add(ClientSpace(workspace_id="ws-1", client_id=acme.id, name="Acme portal"))
    db_session.commit()
    return acme


def _invoice(db_session: Session, client: Client, amount: str = "150.00") -> Invoice:
    invoice = Invoice(
        workspace_id="ws-1",
        client_id=client.id,
        invoice_number="INV-1001",
        amount=Decimal(amount),
        status="sent",
    )
    db_session.add(invoice)
    db_session.commit()
    return invoice


def _executions(db_session: Session) -> list[WorkflowExecution]:
    return list(db_session.scalars(select(WorkflowExecution)).all())


PAYMENT_EMAIL = {
    "type": "send_email",
    "config": {"recipient": "client", "subject": "Payment of {{amount}} received", "message": "{{invoice_number}}"},
}


def test_payment_webhook_marks_paid_and_runs_workflow_once(
    client: TestClient,
    db_session: Session,
    email_sender: FakeEmailSender,
) -> None:
    acme = _acme(db_session)
    invoice = _invoice(db_session, acme)
    invoice_id = invoice.id
    _workflow(db_session, "invoice_paid", [PAYMENT_EMAIL])

    response = client.post("/api/webhooks/payments/stripe", json={"invoice_id": invoice_id, "status": "succeeded"})

    assert response.status_code == 200
    assert response.json() == {"received": True, "invoice_id": invoice_id, "invoice_status": "paid", "ignored": False}
    assert email_sender.sent == [
        {"recipient": "hello@acme.io", "subject": "Payment of 150.00 received", "html": "INV-1001"}
    ]
    paid_events = [item for item in events.published_events if item["event_type"] == "crm.invoice.paid"]
    assert paid_events[0]["dedup_key"] == f"invoice:{invoice_id}:paid"

    redelivered = client.post("/api/webhooks/payments/stripe", json={"invoice_id": invoice_id, "status": "succeeded"})

    assert redelivered.status_code == 200
    assert len(email_sender.sent) == 1
    executions = _executions(db_session)
    assert len(executions) == 1
    assert executions[0].status == "succeeded"


def test_payment_webhook_acknowledges_even_when_automation_fails(
    client: TestClient,
    db_session: Session,
    email_sender: FakeEmailSender,
) -> None:
    acme = _acme(db_session)
    invoice = _invoice(db_session, acme)
    _workflow(db_session, "invoice_paid", [PAYMENT_EMAIL])
    email_sender.failures.append(EmailDeliveryError("email provider returned 422", transient=False, status_code=422))

    response = client.post("/api/webhooks/payments/stripe", json={"invoice_id": invoice.id, "status": "paid"})

    assert response.status_code == 200
    assert response.json()["invoice_status"] == "paid"
    assert _executions(db_session)[0].status == "failed"


def test_payment_webhook_ignores_unpaid_statuses(client: TestClient, db_session: Session) -> None:
    acme = _acme(db_session)
    invoice = _invoice(db_session, acme)

    response = client.post("/api/webhooks/payments/stripe", json={"invoice_id": invoice.id, "status": "pending"})

    assert response.status_code == 200
    assert response.json()["ignored"] is True
    db_session.refresh(invoice)
    assert invoice.status == "sent"
    assert events.published_events == []


def test_payment_webhook_unknown_invoice_and_secret(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    missing = client.post("/api/webhooks/payments/stripe", json={"invoice_id": "missing", "status": "paid"})
    assert missing.status_code == 404
    assert missing.json()["code"] == "stripe_webhook_failed"

    monkeypatch.setenv("WEBHOOK_SECRET", "s3cret")
    get_settings.cache_clear()
    unauthorized = client.post("/api/webhooks/payments/stripe", json={"invoice_id": "missing", "status": "paid"})
    assert unauthorized.status_code == 401

    authorized = client.post(
        "/api/webhooks/payments/stripe",
        json={"invoice_id": "missing", "status": "paid"},
        headers={"x-webhook-secret": "s3cret"},
    )
    assert authorized.status_code == 404


def test_amount_threshold_filters_invoice_workflows(
    client: TestClient,
    db_session: Session,
    email_sender: FakeEmailSender,
) -> None:
    acme = _acme(db_session)
    small = _invoice(db_session, acme, amount="50.00")
    _workflow(db_session, "invoice_paid", [PAYMENT_EMAIL], amount_threshold=100)

    client.post("/api/webhooks/payments/stripe", json={"invoice_id": small.id, "status": "paid"})

    assert email_sender.sent == []
    assert _executions(db_session) == []


def test_client_creation_triggers_source_filtered_workflow(client: TestClient, db_session: Session) -> None:
    _workflow(db_session, "new_client_created", [{"type": "create_task", "config": {"title": "Onboard {{client_name}}"}}], source="funnel")

    manual = client.post("/api/clients", json={"name": "Manual Co", "email": "m@manual.io"})
    funnel = client.post("/api/clients", json={"name": "Funnel Co", "email": "f@funnel.io", "source": "funnel"})

    assert manual.status_code == 201
    assert funnel.status_code == 201
    titles = db_session.scalars(select(Task.title)).all()
    assert titles == ["Onboard Funnel Co"]
    execution = _executions(db_session)[0]
    assert execution.dedup_key == f"client:{funnel.json()['id']}:created"


def test_task_completion_posts_chat_message(client: TestClient, db_session: Session) -> None:
    acme = _acme(db_session)
    created = client.post("/api/tasks", json={"title": "Collect brand assets", "client_id": acme.id})
    assert created.status_code == 201
    task_id = created.json()["id"]
    _workflow(
        db_session,
        "task_completed",
        [{"type": "send_chat_message", "config": {"message": "Done: {{task_title}}"}}],
        task_id=task_id,
    )

    completed = client.post(f"/api/tasks/{task_id}/complete")
    again = client.post(f"/api/tasks/{task_id}/complete")

    assert completed.status_code == 200
    assert completed.json()["status"] == "done"
    assert again.status_code == 200
    messages = db_session.scalars(select(Message.content)).all()
    assert messages == ["Done: Collect brand assets"]


def test_funnel_step_completion_dispatches(
    client: TestClient,
    db_session: Session,
    email_sender: FakeEmailSender,
) -> None:
    _workflow(
        db_session,
        "funnel_step_completed",
        [{"type": "send_email", "config": {"recipient": "client", "subject": "Step {{step_index}} done"}}],
        funnel_id="f-1",
        step_index=1,
    )

    other_step = client.post(
        "/api/funnels/f-1/steps/complete",
        json={"session_id": "sess-1", "step_index": 0, "client_email": "lead@prospect.io"},
    )
    target_step = client.post(
        "/api/funnels/f-1/steps/complete",
        json={"session_id": "sess-1", "step_index": 1, "step_type": "form", "client_email": "lead@prospect.io"},
    )

    assert other_step.status_code == 200
    assert target_step.status_code == 200
    assert target_step.json()["dedup_key"] == "funnel_session:sess-1:step:1:completed"
    assert email_sender.sent == [{"recipient": "lead@prospect.io", "subject": "Step 1 done", "html": ""}]


def test_due_date_scan_dispatches_tasks_inside_window(
    db_session: Session,
    dispatcher: EventDispatcher,
) -> None:
    today = date(2026, 10, 19)
    near = Task(workspace_id="ws-1", title="Send proposal", due_date=today + timedelta(days=2))
    far = Task(workspace_id="ws-1", title="Quarterly review", due_date=today + timedelta(days=10))
    done = Task(workspace_id="ws-1", title="Old", due_date=today + timedelta(days=1), status="done")
    overdue = Task(workspace_id="ws-1", title="Late", due_date=today - timedelta(days=1))
    db_session.add_all([near, far, done, overdue])
    db_session.commit()
    near_id = near.id
    _workflow(
        db_session,
        "due_date_approaching",
        [{"type": "create_task", "config": {"title": "Reminder: {{task_title}} due {{due_date}}"}}],
        days_before=3,
    )

    result = scan_due_dates(db_session, dispatcher, today=today)

    assert result.scanned_workflows == 1
    assert result.tasks_found == 1
    assert result.triggered_count == 1
    assert result.results[0].dedup_key == f"task:{near_id}:due:2026-10-21"
    reminder = db_session.scalars(select(Task).where(Task.title.like("Reminder:%"))).one()
    assert reminder.title == "Reminder: Send proposal due 2026-10-21"

    rerun = scan_due_dates(db_session, dispatcher, today=today)
    assert rerun.tasks_found == 1
    assert rerun.triggered_count == 0
    assert rerun.results[0].entries[0].status == "skipped"


def test_due_date_scan_respects_each_workflow_window(
    db_session: Session,
    dispatcher: EventDispatcher,
) -> None:
    today = date(2026, 10, 19)
    task = Task(workspace_id="ws-1", title="Launch", due_date=today + timedelta(days=5))
    db_session.add(task)
    db_session.commit()
    _workflow(db_session, "due_date_approaching", [{"type": "create_task", "config": {"title": "Short"}}], days_before=1)
    _workflow(db_session, "due_date_approaching", [{"type": "create_task", "config": {"title": "Long"}}], days_before=7)

    result = scan_due_dates(db_session, dispatcher, today=today)

    assert result.tasks_found == 1
    assert result.triggered_count == 1
    assert db_session.scalar(select(func.count()).select_from(Task).where(Task.title == "Short")) == 0
    assert db_session.scalar(select(func.count()).select_from(Task).where(Task.title == "Long")) == 1


def test_due_date_event_payload(db_session: Session) -> None:
    task = Task(workspace_id="ws-1", title="Launch", due_date=date(2026, 10, 22), assigned_to_user_id="pm-1")
    db_session.add(task)
    db_session.commit()

    event = due_date_approaching_event(task, date(2026, 10, 19))

    assert event.kind == "due_date_approaching"
    assert event.dedup_key == f"task:{task.id}:due:2026-10-22"
    assert event.payload["days_until_due"] == 3
    assert event.payload["assigned_user_id"] == "pm-1"
    assert event.occurred_at.utcoffset() == timedelta(0)


def test_cron_endpoint_requires_secret(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    open_call = client.get("/api/cron/check-due-dates")
    assert open_call.status_code == 200
    assert open_call.json()["scanned_workflows"] == 0

    monkeypatch.setenv("CRON_SECRET", "cron-key")
    get_settings.cache_clear()

    denied = client.post("/api/cron/check-due-dates")
    assert denied.status_code == 401
    assert denied.json()["code"] == "cron_unauthorized"

    allowed = client.post("/api/cron/check-due-dates", headers={"Authorization": "Bearer cron-key"})
    assert allowed.status_code == 200


def test_dispatch_mode_off_publishes_without_running(
    client: TestClient,
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _workflow(db_session, "new_client_created", [{"type": "create_task", "config": {"title": "Onboard"}}])
    monkeypatch.setenv("WORKFLOW_DISPATCH_MODE", "off")
    get_settings.cache_clear()

    response = client.post("/api/clients", json={"name": "Quiet Co"})

    assert response.status_code == 201
    assert [item["event_type"] for item in events.published_events] == ["crm.client.created"]
    assert _executions(db_session) == []
