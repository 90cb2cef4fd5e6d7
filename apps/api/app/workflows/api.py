from __future__ import annotations

import uuid
from dataclasses import replace

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.database import get_db
from app.crm.api import error_response, get_current_user, require_permission
from app.crm.service import ActorUser, require_workspace
from app.workflows.dispatcher import EventDispatcher, get_event_dispatcher
from app.workflows.errors import InvalidEventError
from app.workflows.producers import scan_due_dates
from app.workflows.schemas import (
    DispatchEventRequest,
    DispatchResult,
    DomainEvent,
    DueDateScanResult,
    ExecutionRecordRead,
    WorkflowCreate,
    WorkflowRead,
    WorkflowUpdate,
)
from app.workflows.service import WorkflowService

router = APIRouter(prefix="/api/workflows", tags=["workflows"])
cron_router = APIRouter(prefix="/api/cron", tags=["cron"])
workflow_service = WorkflowService()


@router.get("", response_model=list[WorkflowRead])
def list_workflows(
    request: Request,
    enabled: bool | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[WorkflowRead] | JSONResponse:
    try:
        require_permission(user, "workflows.read")
        return workflow_service.list_workflows(db, user, enabled=enabled)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="workflow_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("", response_model=WorkflowRead, status_code=status.HTTP_201_CREATED)
def create_workflow(
    request: Request,
    dto: WorkflowCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        require_permission(user, "workflows.manage")
        return workflow_service.create_workflow(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="workflow_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/events", response_model=DispatchResult)
def dispatch_event(
    request: Request,
    dto: DispatchEventRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
) -> DispatchResult | JSONResponse:
    try:
        require_permission(user, "workflows.dispatch")
        workspace_id = dto.workspace_id or user.workspace_id
        require_workspace(replace(user, workspace_id=workspace_id))
        event = DomainEvent(kind=dto.kind, workspace_id=workspace_id or "", dedup_key=dto.dedup_key, payload=dto.payload)
        return dispatcher.dispatch(db, event)
    except InvalidEventError as exc:
        return error_response(
            request,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="workflow_event_invalid",
            message=exc.message,
            details=exc.details,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="workflow_dispatch_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/{workflow_id}", response_model=WorkflowRead)
def get_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        require_permission(user, "workflows.read")
        return workflow_service.get_workflow(db, user, workflow_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="workflow_read_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.patch("/{workflow_id}", response_model=WorkflowRead)
def update_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    dto: WorkflowUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        require_permission(user, "workflows.manage")
        return workflow_service.update_workflow(db, user, workflow_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="workflow_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/{workflow_id}/toggle", response_model=WorkflowRead)
def toggle_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        require_permission(user, "workflows.manage")
        return workflow_service.toggle_workflow(db, user, workflow_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="workflow_toggle_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.delete("/{workflow_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, str] | JSONResponse:
    try:
        require_permission(user, "workflows.manage")
        workflow_service.delete_workflow(db, user, workflow_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="workflow_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/{workflow_id}/executions", response_model=list[ExecutionRecordRead])
def list_workflow_executions(
    request: Request,
    workflow_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ExecutionRecordRead] | JSONResponse:
    try:
        require_permission(user, "workflows.read")
        return workflow_service.list_executions(db, user, workflow_id, limit=limit)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="workflow_executions_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


def _check_due_dates(
    request: Request,
    db: Session,
    dispatcher: EventDispatcher,
    authorization: str | None,
) -> DueDateScanResult | JSONResponse:
    settings = get_settings()
    if settings.cron_secret and authorization != f"Bearer {settings.cron_secret}":
        return error_response(
            request,
            status_code=status.HTTP_401_UNAUTHORIZED,
            code="cron_unauthorized",
            message="invalid cron secret",
        )
    return scan_due_dates(db, dispatcher)


@cron_router.get("/check-due-dates", response_model=DueDateScanResult)
def check_due_dates(
    request: Request,
    db: Session = Depends(get_db),
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
    authorization: str | None = Header(default=None),
) -> DueDateScanResult | JSONResponse:
    return _check_due_dates(request, db, dispatcher, authorization)


@cron_router.post("/check-due-dates", response_model=DueDateScanResult)
def trigger_due_date_check(
    request: Request,
    db: Session = Depends(get_db),
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
    authorization: str | None = Header(default=None),
) -> DueDateScanResult | JSONResponse:
    return _check_due_dates(request, db, dispatcher, authorization)
