from __future__ import annotations

from collections.abc import Generator
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.core.events import InProcessEventBus
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.service import ActorUser, BoardService, ClientService, MessagingService, TaskService
from app.main import app
from app.workflows.dispatcher import EventDispatcher, get_event_dispatcher
from app.workflows.executors import WorkflowCollaborators
from app.workflows.models import Workflow


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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class NullEmailSender:
    def send(self, recipient: str, subject: str, html: str) -> dict[str, Any]:
        return {"id": "email-1"}


@pytest.fixture()
def roles() -> list[str]:
    return ["system.metrics.read"]


@pytest.fixture()
def client(db_session: Session, roles: list[str]) -> Generator[TestClient, None, None]:
    dispatcher = EventDispatcher(
        collaborators=WorkflowCollaborators(
            email_sender=NullEmailSender(),
            clients=ClientService(),
            tasks=TaskService(),
            boards=BoardService(),
            messaging=MessagingService(bus=InProcessEventBus()),
        )
    )

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_crm_user() -> ActorUser:
        return ActorUser(
            user_id="metrics-user",
            workspace_id="ws-1",
            workspace_ids=["ws-1"],
            permissions={"workflows.read", "workflows.manage", "workflows.dispatch"},
            correlation_id="metrics-corr-1",
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=roles)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_crm_user
    app.dependency_overrides[auth_get_current_user] = override_auth_user
    app.dependency_overrides[get_event_dispatcher] = lambda: dispatcher

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_workflow_metrics(client: TestClient, db_session: Session) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    db_session.add(
        Workflow(
            workspace_id="ws-1",
            name="Metrics workflow",
            trigger_type="task_completed",
            trigger_config={},
            actions=[
                {"type": "send_email", "config": {"recipient": "custom", "email": "ops@agency.io"}},
                {"type": "move_card", "config": {"column_id": "col-1"}},
            ],
            enabled=True,
        )
    )
    db_session.commit()

    dispatched = client.post(
        "/api/workflows/events",
        json={"kind": "task_completed", "dedup_key": "task:metrics:completed", "payload": {"task_id": "metrics"}},
    )
    assert dispatched.status_code == 200
    assert dispatched.json()["entries"][0]["outcome"] == "partially_failed"
    replay = client.post(
        "/api/workflows/events",
        json={"kind": "task_completed", "dedup_key": "task:metrics:completed", "payload": {"task_id": "metrics"}},
    )
    assert replay.json()["entries"][0]["status"] == "skipped"

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "workflow_dispatches_total" in body
    assert "workflow_action_duration_seconds" in body

    assert 'path="/health"' in body
    assert 'path="/api/workflows/events"' in body
    assert 'event_kind="task_completed",outcome="partially_failed"' in body
    assert 'action_kind="send_email",status="succeeded"' in body
    assert 'action_kind="move_card",status="error"' in body
    assert "workflow_replays_total{event_kind=\"task_completed\"}" in body


@pytest.mark.parametrize("roles", [["user"]])
def test_metrics_endpoint_requires_role(client: TestClient) -> None:
    response = client.get("/metrics")
    assert response.status_code == 403


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")
    assert response.status_code == 404
