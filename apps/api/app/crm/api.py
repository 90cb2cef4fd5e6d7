from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.config import get_settings
from app.core.database import get_db
from app.crm.schemas import (
    ClientCreate,
    ClientRead,
    FunnelStepCompleteRequest,
    FunnelStepCompleteResponse,
    PaymentWebhookAck,
    PaymentWebhookPayload,
    TaskCreate,
    TaskRead,
)
from app.crm.service import ActorUser, ClientService, InvoiceService, TaskService, require_workspace
from app.workflows import producers

router = APIRouter(prefix="/api/clients", tags=["crm.clients"])
tasks_router = APIRouter(prefix="/api/tasks", tags=["crm.tasks"])
webhooks_router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
funnels_router = APIRouter(prefix="/api/funnels", tags=["funnels"])
client_service = ClientService()
task_service = TaskService()
invoice_service = InvoiceService()

_PAID_STATUSES = {"paid", "succeeded", "completed", "captured"}


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    workspace_id = (request.headers.get("x-workspace-id") or "").strip() or None
    if workspace_id is None and len(auth_user.workspace_ids) == 1:
        workspace_id = auth_user.workspace_ids[0]

    normalized_roles = {str(role).lower() for role in auth_user.roles}
    return ActorUser(
        user_id=auth_user.sub,
        workspace_id=workspace_id,
        workspace_ids=list(auth_user.workspace_ids),
        permissions=set(auth_user.roles),
        is_admin="admin" in normalized_roles or "system.admin" in normalized_roles,
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if user.is_admin:
        return
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@router.post("", response_model=ClientRead, status_code=status.HTTP_201_CREATED)
def create_client(
    request: Request,
    dto: ClientCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        require_permission(user, "crm.clients.write")
        return client_service.create_client(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_client_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("", response_model=list[ClientRead])
def list_clients(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ClientRead] | JSONResponse:
    try:
        require_permission(user, "crm.clients.read")
        return client_service.list_clients(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_client_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.post("", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(
    request: Request,
    dto: TaskCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        require_permission(user, "crm.tasks.write")
        return task_service.create_task(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.get("", response_model=list[TaskRead])
def list_tasks(
    request: Request,
    task_status: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    try:
        require_permission(user, "crm.tasks.read")
        return task_service.list_tasks(db, user, task_status=task_status)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.post("/{task_id}/complete", response_model=TaskRead)
def complete_task(
    request: Request,
    task_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        require_permission(user, "crm.tasks.write")
        return task_service.complete_task(db, user, task_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_complete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@webhooks_router.post("/payments/{provider}", response_model=PaymentWebhookAck)
def payment_webhook(
    request: Request,
    provider: str,
    payload: PaymentWebhookPayload,
    db: Session = Depends(get_db),
    webhook_secret: str | None = Header(default=None, alias="x-webhook-secret"),
) -> PaymentWebhookAck | JSONResponse:
    settings = get_settings()
    if settings.webhook_secret and webhook_secret != settings.webhook_secret:
        return error_response(
            request,
            status_code=status.HTTP_401_UNAUTHORIZED,
            code="webhook_unauthorized",
            message="invalid webhook secret",
        )

    if payload.status.strip().lower() not in _PAID_STATUSES:
        return PaymentWebhookAck(invoice_id=payload.invoice_id, ignored=True)

    try:
        # Automation outcomes never change the acknowledgement.
        invoice = invoice_service.mark_paid(db, payload.invoice_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code=f"{provider}_webhook_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    return PaymentWebhookAck(invoice_id=invoice.id, invoice_status=invoice.status)


@funnels_router.post("/{funnel_id}/steps/complete", response_model=FunnelStepCompleteResponse)
def complete_funnel_step(
    request: Request,
    funnel_id: str,
    dto: FunnelStepCompleteRequest,
    user: ActorUser = Depends(get_current_user),
) -> FunnelStepCompleteResponse | JSONResponse:
    try:
        require_permission(user, "funnels.write")
        workspace_id = require_workspace(user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="funnel_step_complete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )

    event = producers.funnel_step_completed_event(
        workspace_id,
        funnel_id,
        dto.session_id,
        dto.step_index,
        dto.step_type,
        client_id=dto.client_id,
        client_email=str(dto.client_email) if dto.client_email else None,
        data=dto.data,
    )
    producers.emit(event)
    return FunnelStepCompleteResponse(
        funnel_id=funnel_id,
        session_id=dto.session_id,
        step_index=dto.step_index,
        dedup_key=event.dedup_key,
    )
