from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field


ClientSource = Literal["manual", "funnel", "import", "portal"]
TaskStatus = Literal["todo", "in_progress", "done"]
TaskPriority = Literal["low", "medium", "high", "urgent"]


class ClientCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=64)
    source: ClientSource = "manual"
    create_space: bool = True


class ClientRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    workspace_id: str
    name: str
    email: str | None
    phone: str | None
    source: str
    created_at: datetime


class TaskCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    priority: TaskPriority = "medium"
    due_date: date | None = None
    client_id: str | None = None
    assigned_to_user_id: str | None = None


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    workspace_id: str
    client_id: str | None
    title: str
    description: str | None
    status: TaskStatus
    priority: str
    due_date: date | None
    assigned_to_user_id: str | None
    completed_at: datetime | None
    created_at: datetime


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    workspace_id: str
    client_id: str | None
    invoice_number: str
    amount: Decimal
    currency: str
    status: str
    paid_at: datetime | None


class PaymentWebhookPayload(BaseModel):
    """Gateway notification already normalised by the provider adapter."""

    invoice_id: str = Field(min_length=1)
    status: str = Field(min_length=1)
    provider_event_id: str | None = None


class PaymentWebhookAck(BaseModel):
    received: bool = True
    invoice_id: str
    invoice_status: str | None = None
    ignored: bool = False


class FunnelStepCompleteRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=128)
    step_index: int = Field(ge=0)
    step_type: str | None = Field(default=None, max_length=64)
    client_id: str | None = None
    client_email: EmailStr | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class FunnelStepCompleteResponse(BaseModel):
    funnel_id: str
    session_id: str
    step_index: int
    dedup_key: str
