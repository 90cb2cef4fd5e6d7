from __future__ import annotations

from collections.abc import Generator

import pytest
from pydantic import ValidationError

from app.core.config import get_settings
from app.workflows.matching import trigger_matches
from app.workflows.schemas import DomainEvent, WorkflowCreate, WorkflowTrigger


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _event(kind: str, **payload: object) -> DomainEvent:
    return DomainEvent(kind=kind, workspace_id="ws-1", dedup_key=f"{kind}:1", payload=dict(payload))


def test_kind_mismatch_never_matches() -> None:
    assert trigger_matches("task_completed", {}, _event("invoice_paid", client_id="c-1")) is False


def test_empty_config_matches_any_payload() -> None:
    assert trigger_matches("invoice_paid", {}, _event("invoice_paid", client_id="c-1", amount="10.00")) is True
    assert trigger_matches("invoice_paid", None, _event("invoice_paid")) is True


def test_invoice_client_filter_is_exact() -> None:
    assert trigger_matches("invoice_paid", {"client_id": "c-1"}, _event("invoice_paid", client_id="c-1")) is True
    assert trigger_matches("invoice_paid", {"client_id": "c-1"}, _event("invoice_paid", client_id="c-2")) is False
    assert trigger_matches("invoice_paid", {"client_id": "c-1"}, _event("invoice_paid")) is False


def test_invoice_amount_threshold() -> None:
    config = {"amount_threshold": 100}
    assert trigger_matches("invoice_paid", config, _event("invoice_paid", amount="150.00")) is True
    assert trigger_matches("invoice_paid", config, _event("invoice_paid", amount="100.00")) is True
    assert trigger_matches("invoice_paid", config, _event("invoice_paid", amount="99.99")) is False
    assert trigger_matches("invoice_paid", config, _event("invoice_paid")) is False
    assert trigger_matches("invoice_paid", config, _event("invoice_paid", amount="not-a-number")) is False


def test_funnel_fields_compare_across_types() -> None:
    config = {"funnel_id": "f-1", "step_index": 2}
    assert trigger_matches(
        "funnel_step_completed",
        config,
        _event("funnel_step_completed", funnel_id="f-1", step_index="2", step_type="form"),
    ) is True
    assert trigger_matches(
        "funnel_step_completed",
        config,
        _event("funnel_step_completed", funnel_id="f-1", step_index=3),
    ) is False
    assert trigger_matches(
        "funnel_step_completed",
        {"step_type": "payment"},
        _event("funnel_step_completed", funnel_id="f-9", step_index=0, step_type="form"),
    ) is False


def test_new_client_source_filter() -> None:
    assert trigger_matches("new_client_created", {"source": "funnel"}, _event("new_client_created", source="funnel"))
    assert not trigger_matches("new_client_created", {"source": "funnel"}, _event("new_client_created", source="manual"))
    assert trigger_matches("new_client_created", {"source": "  "}, _event("new_client_created", source="manual"))


def test_task_completed_task_filter() -> None:
    assert trigger_matches("task_completed", {"task_id": "t-1"}, _event("task_completed", task_id="t-1"))
    assert not trigger_matches("task_completed", {"task_id": "t-1"}, _event("task_completed", task_id="t-2"))


def test_due_date_window_uses_days_before() -> None:
    config = {"days_before": 3}
    assert trigger_matches("due_date_approaching", config, _event("due_date_approaching", days_until_due=0))
    assert trigger_matches("due_date_approaching", config, _event("due_date_approaching", days_until_due=3))
    assert not trigger_matches("due_date_approaching", config, _event("due_date_approaching", days_until_due=5))
    assert not trigger_matches("due_date_approaching", config, _event("due_date_approaching", days_until_due=-1))
    # Events raised without a computed distance are not filtered by the window.
    assert trigger_matches("due_date_approaching", config, _event("due_date_approaching", task_id="t-1"))


def test_due_date_window_defaults_from_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DUE_DATE_DEFAULT_DAYS_BEFORE", "1")
    get_settings.cache_clear()

    assert trigger_matches("due_date_approaching", {}, _event("due_date_approaching", days_until_due=1))
    assert not trigger_matches("due_date_approaching", {}, _event("due_date_approaching", days_until_due=2))


def test_trigger_config_is_validated_per_kind() -> None:
    trigger = WorkflowTrigger(type="invoice_paid", config={"client_id": "c-1", "amount_threshold": None})
    assert trigger.config == {"client_id": "c-1"}

    with pytest.raises(ValidationError):
        WorkflowTrigger(type="invoice_paid", config={"step_index": 1})
    with pytest.raises(ValidationError):
        WorkflowTrigger(type="due_date_approaching", config={"days_before": -1})
    with pytest.raises(ValidationError):
        WorkflowTrigger.model_validate({"type": "lead_created", "config": {}})


def test_workflow_create_requires_known_actions() -> None:
    base = {"name": "Welcome", "trigger": {"type": "new_client_created"}}

    with pytest.raises(ValidationError):
        WorkflowCreate.model_validate({**base, "actions": []})
    with pytest.raises(ValidationError):
        WorkflowCreate.model_validate({**base, "actions": [{"type": "send_sms", "config": {}}]})
    with pytest.raises(ValidationError):
        WorkflowCreate.model_validate({**base, "actions": [{"type": "create_task", "config": {}}]})
    with pytest.raises(ValidationError):
        WorkflowCreate.model_validate(
            {**base, "actions": [{"type": "send_email", "config": {"recipient": "custom"}}]}
        )

    dto = WorkflowCreate.model_validate(
        {**base, "actions": [{"type": "send_email", "config": {"subject": "Hi {{client_name}}"}}]}
    )
    assert dto.actions[0].type == "send_email"
    assert dto.actions[0].config.recipient == "client"
