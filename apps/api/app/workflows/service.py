from __future__ import annotations

import uuid
from dataclasses import replace
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from app import audit
from app.crm.service import ActorUser, require_workspace
from app.workflows.models import Workflow
from app.workflows.repository import WorkflowRepository
from app.workflows.schemas import (
    ExecutionRecordRead,
    WorkflowCreate,
    WorkflowExecutionSummary,
    WorkflowRead,
    WorkflowTriggerRead,
    WorkflowUpdate,
)


class WorkflowService:
    def __init__(self, repository: WorkflowRepository | None = None) -> None:
        self.repository = repository or WorkflowRepository()

    def list_workflows(self, session: Session, actor_user: ActorUser, *, enabled: bool | None = None) -> list[WorkflowRead]:
        workspace_id = require_workspace(actor_user)
        rows = self.repository.list_for_workspace(session, workspace_id, enabled=enabled)
        return [self._to_read(session, row) for row in rows]

    def get_workflow(self, session: Session, actor_user: ActorUser, workflow_id: uuid.UUID) -> WorkflowRead:
        return self._to_read(session, self._load(session, actor_user, workflow_id))

    def create_workflow(self, session: Session, actor_user: ActorUser, dto: WorkflowCreate) -> WorkflowRead:
        target_actor = replace(actor_user, workspace_id=dto.workspace_id) if dto.workspace_id else actor_user
        workspace_id = require_workspace(target_actor)

        workflow = Workflow(
            workspace_id=workspace_id,
            name=dto.name.strip(),
            description=dto.description,
            trigger_type=dto.trigger.type,
            trigger_config=dto.trigger.config,
            actions=[action.model_dump(mode="json", exclude_none=True) for action in dto.actions],
            enabled=dto.enabled,
            created_by_user_id=actor_user.user_id,
        )
        session.add(workflow)
        session.flush()

        after = self._snapshot(workflow)
        audit.record(
            actor_user_id=actor_user.user_id,
            workspace_id=workspace_id,
            entity_type="workflow",
            entity_id=str(workflow.id),
            action="workflow.created",
            before=None,
            after=after,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.refresh(workflow)
        return self._to_read(session, workflow)

    def update_workflow(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
        dto: WorkflowUpdate,
    ) -> WorkflowRead:
        workflow = self._load(session, actor_user, workflow_id)
        before = self._snapshot(workflow)

        updates = dto.model_dump(exclude_unset=True)
        if "name" in updates and dto.name is not None:
            workflow.name = dto.name.strip()
        if "description" in updates:
            workflow.description = dto.description
        if dto.trigger is not None:
            workflow.trigger_type = dto.trigger.type
            workflow.trigger_config = dto.trigger.config
        if dto.actions is not None:
            workflow.actions = [action.model_dump(mode="json", exclude_none=True) for action in dto.actions]
        if dto.enabled is not None:
            workflow.enabled = dto.enabled

        session.add(workflow)
        session.flush()
        audit.record(
            actor_user_id=actor_user.user_id,
            workspace_id=workflow.workspace_id,
            entity_type="workflow",
            entity_id=str(workflow.id),
            action="workflow.updated",
            before=before,
            after=self._snapshot(workflow),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.refresh(workflow)
        return self._to_read(session, workflow)

    def toggle_workflow(self, session: Session, actor_user: ActorUser, workflow_id: uuid.UUID) -> WorkflowRead:
        workflow = self._load(session, actor_user, workflow_id)
        workflow.enabled = not workflow.enabled
        session.add(workflow)
        session.flush()
        audit.record(
            actor_user_id=actor_user.user_id,
            workspace_id=workflow.workspace_id,
            entity_type="workflow",
            entity_id=str(workflow.id),
            action="workflow.enabled" if workflow.enabled else "workflow.disabled",
            before={"enabled": not workflow.enabled},
            after={"enabled": workflow.enabled},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.refresh(workflow)
        return self._to_read(session, workflow)

    def delete_workflow(self, session: Session, actor_user: ActorUser, workflow_id: uuid.UUID) -> None:
        workflow = self._load(session, actor_user, workflow_id)
        before = self._snapshot(workflow)
        workspace_id = workflow.workspace_id
        session.delete(workflow)
        audit.record(
            actor_user_id=actor_user.user_id,
            workspace_id=workspace_id,
            entity_type="workflow",
            entity_id=str(workflow_id),
            action="workflow.deleted",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()

    def list_executions(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
        *,
        limit: int = 50,
    ) -> list[ExecutionRecordRead]:
        self._load(session, actor_user, workflow_id)
        rows = self.repository.list_executions(session, workflow_id, limit=limit)
        return [ExecutionRecordRead.model_validate(row) for row in rows]

    def _load(self, session: Session, actor_user: ActorUser, workflow_id: uuid.UUID) -> Workflow:
        workspace_id = require_workspace(actor_user)
        workflow = self.repository.get(session, workflow_id)
        if workflow is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="workflow not found")
        if workflow.workspace_id != workspace_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="workflow belongs to another workspace")
        return workflow

    def _snapshot(self, workflow: Workflow) -> dict[str, Any]:
        return {
            "name": workflow.name,
            "description": workflow.description,
            "trigger": {"type": workflow.trigger_type, "config": dict(workflow.trigger_config or {})},
            "actions": list(workflow.actions or []),
            "enabled": workflow.enabled,
        }

    def _to_read(self, session: Session, workflow: Workflow) -> WorkflowRead:
        last_execution = self.repository.last_execution(session, workflow.id)
        return WorkflowRead(
            id=workflow.id,
            workspace_id=workflow.workspace_id,
            name=workflow.name,
            description=workflow.description,
            trigger=WorkflowTriggerRead(type=workflow.trigger_type, config=workflow.trigger_config or {}),
            actions=list(workflow.actions or []),
            enabled=workflow.enabled,
            created_by_user_id=workflow.created_by_user_id,
            created_at=workflow.created_at,
            updated_at=workflow.updated_at,
            last_execution=(
                WorkflowExecutionSummary.model_validate(last_execution) if last_execution is not None else None
            ),
        )
