from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, get_args
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

from app.workflows.models import utcnow


TriggerKind = Literal[
    "invoice_paid",
    "funnel_step_completed",
    "new_client_created",
    "due_date_approaching",
    "task_completed",
]
ActionKind = Literal["send_email", "create_task", "move_card", "send_chat_message"]
ExecutionOutcome = Literal["succeeded", "partially_failed", "failed"]
ExecutionStatus = Literal["running", "succeeded", "partially_failed", "failed"]
ActionStatus = Literal["succeeded", "failed", "skipped"]
DispatchStatus = Literal["ran", "skipped", "errored"]

TRIGGER_KINDS: tuple[str, ...] = get_args(TriggerKind)
ACTION_KINDS: tuple[str, ...] = get_args(ActionKind)


class _TriggerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")


class InvoicePaidTriggerConfig(_TriggerConfig):
    client_id: str | None = None
    amount_threshold: float | None = Field(default=None, ge=0)


class FunnelStepCompletedTriggerConfig(_TriggerConfig):
    funnel_id: str | None = None
    step_type: str | None = None
    step_index: int | None = Field(default=None, ge=0)


class NewClientCreatedTriggerConfig(_TriggerConfig):
    source: str | None = None


class DueDateApproachingTriggerConfig(_TriggerConfig):
    days_before: int | None = Field(default=None, ge=0, le=365)
    task_id: str | None = None


class TaskCompletedTriggerConfig(_TriggerConfig):
    task_id: str | None = None


TRIGGER_CONFIG_MODELS: dict[str, type[_TriggerConfig]] = {
    "invoice_paid": InvoicePaidTriggerConfig,
    "funnel_step_completed": FunnelStepCompletedTriggerConfig,
    "new_client_created": NewClientCreatedTriggerConfig,
    "due_date_approaching": DueDateApproachingTriggerConfig,
    "task_completed": TaskCompletedTriggerConfig,
}


class WorkflowTrigger(BaseModel):
    type: TriggerKind
    config: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_config(self) -> "WorkflowTrigger":
        config_model = TRIGGER_CONFIG_MODELS[self.type]
        self.config = config_model.model_validate(self.config or {}).model_dump(exclude_none=True)
        return self


class SendEmailConfig(BaseModel):
    recipient: Literal["client", "assigned_user", "custom"] = "client"
    email: EmailStr | None = None
    subject: str = "Notification"
    message: str = ""

    @model_validator(mode="after")
    def require_custom_address(self) -> "SendEmailConfig":
        if self.recipient == "custom" and not self.email:
            raise ValueError("email is required when recipient is custom")
        return self


class CreateTaskConfig(BaseModel):
    title: str = Field(min_length=1)
    description: str | None = None
    priority: Literal["low", "medium", "high", "urgent"] = "medium"
    due_date_offset: int | None = Field(default=None, ge=0)
    assignee_user_id: str | None = None


class MoveCardConfig(BaseModel):
    board_id: str | None = None
    column_id: str = Field(min_length=1)


class SendChatMessageConfig(BaseModel):
    message: str = Field(min_length=1)
    client_space_id: str | None = None


class SendEmailAction(BaseModel):
    type: Literal["send_email"]
    config: SendEmailConfig


class CreateTaskAction(BaseModel):
    type: Literal["create_task"]
    config: CreateTaskConfig


class MoveCardAction(BaseModel):
    type: Literal["move_card"]
    config: MoveCardConfig


class SendChatMessageAction(BaseModel):
    type: Literal["send_chat_message"]
    config: SendChatMessageConfig


WorkflowAction = Annotated[
    SendEmailAction | CreateTaskAction | MoveCardAction | SendChatMessageAction,
    Field(discriminator="type"),
]

class WorkflowCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    workspace_id: str | None = Field(default=None, min_length=1, max_length=64)
    trigger: WorkflowTrigger
    actions: list[WorkflowAction] = Field(min_length=1)
    enabled: bool = True


class WorkflowUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    trigger: WorkflowTrigger | None = None
    actions: list[WorkflowAction] | None = Field(default=None, min_length=1)
    enabled: bool | None = None


class WorkflowTriggerRead(BaseModel):
    type: str
    config: dict[str, Any] = Field(default_factory=dict)


class ActionOutcome(BaseModel):
    index: int
    kind: str
    status: ActionStatus
    attempts: int = 0
    error: str | None = None
    transient: bool | None = None
    detail: dict[str, Any] = Field(default_factory=dict)


class WorkflowExecutionSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    status: ExecutionStatus
    dedup_key: str
    event_kind: str
    started_at: datetime
    finished_at: datetime | None


class WorkflowRead(BaseModel):
    id: UUID
    workspace_id: str
    name: str
    description: str | None
    trigger: WorkflowTriggerRead
    actions: list[dict[str, Any]]
    enabled: bool
    created_by_user_id: str | None
    created_at: datetime
    updated_at: datetime
    last_execution: WorkflowExecutionSummary | None = None


class ExecutionRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workflow_id: UUID
    workspace_id: str
    dedup_key: str
    event_kind: str
    event_payload: dict[str, Any]
    status: ExecutionStatus
    action_results: list[ActionOutcome]
    correlation_id: str | None
    started_at: datetime
    finished_at: datetime | None


class DomainEvent(BaseModel):
    """One logical business occurrence handed to the dispatcher.

    ``dedup_key`` identifies the occurrence, not the delivery: a redelivered
    webhook for the same invoice must produce the same key.
    """

    kind: str
    workspace_id: str
    dedup_key: str
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)


class DispatchEventRequest(BaseModel):
    kind: str = Field(min_length=1, max_length=64)
    dedup_key: str = Field(min_length=1, max_length=255)
    workspace_id: str | None = Field(default=None, min_length=1, max_length=64)
    payload: dict[str, Any] = Field(default_factory=dict)


class WorkflowDispatchEntry(BaseModel):
    workflow_id: UUID
    workflow_name: str
    status: DispatchStatus
    outcome: ExecutionStatus | None = None
    execution_id: UUID | None = None
    error: str | None = None
    action_results: list[ActionOutcome] = Field(default_factory=list)


class DispatchResult(BaseModel):
    event_kind: str
    workspace_id: str
    dedup_key: str
    entries: list[WorkflowDispatchEntry] = Field(default_factory=list)
    error: str | None = None

    def count(self, status: DispatchStatus) -> int:
        return sum(1 for entry in self.entries if entry.status == status)


class DueDateScanResult(BaseModel):
    scanned_workflows: int = 0
    tasks_found: int = 0
    triggered_count: int = 0
    results: list[DispatchResult] = Field(default_factory=list)
