from __future__ import annotations

from collections.abc import Generator
from datetime import date, timedelta
from typing import Any

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import app.core.celery_app as celery_module
import app.core.database as database_module
import app.main as main_module
from app.core.config import get_settings
from app.core.database import Base
from app.core.events import InProcessEventBus, InternalEvent
from app.crm.models import Task
from app.crm.service import BoardService, ClientService, MessagingService, TaskService
from app.workflows.dispatcher import EventDispatcher, set_event_dispatcher
from app.workflows.executors import WorkflowCollaborators
from app.workflows.models import Workflow, WorkflowExecution


@pytest.fixture()
def session_factory(monkeypatch: pytest.MonkeyPatch) -> Generator[sessionmaker, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(database_module, "SessionLocal", factory)
    yield factory
    Base.metadata.drop_all(bind=engine)


class RecordingEmailSender:
    def __init__(self) -> None:
        self.sent: list[dict[str, str]] = []

    def send(self, recipient: str, subject: str, html: str) -> dict[str, Any]:
        self.sent.append({"recipient": recipient, "subject": subject})
        return {"id": f"email-{len(self.sent)}"}


@pytest.fixture()
def email_sender() -> Generator[RecordingEmailSender, None, None]:
    sender = RecordingEmailSender()
    set_event_dispatcher(
        EventDispatcher(
            collaborators=WorkflowCollaborators(
                email_sender=sender,
                clients=ClientService(),
                tasks=TaskService(),
                boards=BoardService(),
                messaging=MessagingService(bus=InProcessEventBus()),
            )
        )
    )
    yield sender
    set_event_dispatcher(None)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _seed_workflow(factory: sessionmaker, trigger_type: str, trigger_config: dict[str, Any]) -> str:
    with factory() as session:
        workflow = Workflow(
            workspace_id="ws-1",
            name=f"{trigger_type} workflow",
            trigger_type=trigger_type,
            trigger_config=trigger_config,
            actions=[
                {
                    "type": "send_email",
                    "config": {"recipient": "custom", "email": "ops@agency.io", "subject": "{{task_title}}"},
                }
            ],
            enabled=True,
        )
        session.add(workflow)
        session.commit()
        return str(workflow.id)


def test_dispatch_event_task_runs_envelope_once(
    session_factory: sessionmaker,
    email_sender: RecordingEmailSender,
) -> None:
    workflow_id = _seed_workflow(session_factory, "task_completed", {})
    envelope = {
        "event_id": "evt-1",
        "event_type": "crm.task.completed",
        "workspace_id": "ws-1",
        "dedup_key": "task:t-1:completed",
        "payload": {"task_id": "t-1", "task_title": "Kickoff call"},
    }

    first = celery_module.dispatch_event_task(envelope)
    second = celery_module.dispatch_event_task(envelope)

    assert first["entries"][0]["workflow_id"] == workflow_id
    assert first["entries"][0]["status"] == "ran"
    assert first["entries"][0]["outcome"] == "succeeded"
    assert second["entries"][0]["status"] == "skipped"
    assert email_sender.sent == [{"recipient": "ops@agency.io", "subject": "Kickoff call"}]

    with session_factory() as session:
        executions = list(session.scalars(select(WorkflowExecution)).all())
    assert len(executions) == 1
    assert executions[0].status == "succeeded"


def test_scan_due_dates_task_reports_counts(
    session_factory: sessionmaker,
    email_sender: RecordingEmailSender,
) -> None:
    _seed_workflow(session_factory, "due_date_approaching", {"days_before": 2})
    today = date.today()
    with session_factory() as session:
        session.add_all(
            [
                Task(workspace_id="ws-1", title="Send proposal", due_date=today + timedelta(days=1)),
                Task(workspace_id="ws-1", title="Quarterly review", due_date=today + timedelta(days=10)),
                Task(workspace_id="ws-1", title="Closed out", status="done", due_date=today),
            ]
        )
        session.commit()

    first = celery_module.scan_due_dates_task()
    rerun = celery_module.scan_due_dates_task()

    assert first == {"scanned_workflows": 1, "tasks_found": 1, "triggered_count": 1}
    assert rerun == {"scanned_workflows": 1, "tasks_found": 1, "triggered_count": 0}
    assert [item["subject"] for item in email_sender.sent] == ["Send proposal"]


def test_beat_schedule_runs_daily_due_date_scan() -> None:
    schedule = celery_module.celery_app.conf.beat_schedule["scan-due-dates-daily"]
    assert schedule["task"] == "app.tasks.scan_due_dates"


class FakeTask:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    def delay(self, envelope: dict[str, Any]) -> None:
        self.calls.append(envelope)


def test_celery_mode_enqueues_trigger_events(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WORKFLOW_DISPATCH_MODE", "celery")
    get_settings.cache_clear()
    fake = FakeTask()
    monkeypatch.setattr(celery_module, "dispatch_event_task", fake)
    envelope = {
        "event_type": "crm.client.created",
        "workspace_id": "ws-1",
        "dedup_key": "client:c-1:created",
        "payload": {"client_id": "c-1"},
    }

    main_module._on_workflow_trigger_event(InternalEvent(name="crm.client.created", payload=envelope))

    assert fake.calls == [envelope]


def test_off_mode_ignores_trigger_events(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WORKFLOW_DISPATCH_MODE", "off")
    get_settings.cache_clear()
    fake = FakeTask()
    monkeypatch.setattr(celery_module, "dispatch_event_task", fake)

    main_module._on_workflow_trigger_event(
        InternalEvent(name="crm.client.created", payload={"event_type": "crm.client.created"})
    )

    assert fake.calls == []
