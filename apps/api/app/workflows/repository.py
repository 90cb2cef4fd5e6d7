from __future__ import annotations

import uuid

from sqlalchemy import Select, and_, select
from sqlalchemy.orm import Session

from app.workflows.models import Workflow, WorkflowExecution


class WorkflowRepository:
    def list_enabled_by_workspace_and_trigger(
        self,
        session: Session,
        workspace_id: str,
        trigger_type: str,
    ) -> list[Workflow]:
        stmt: Select[tuple[Workflow]] = select(Workflow).where(
            and_(
                Workflow.workspace_id == workspace_id,
                Workflow.trigger_type == trigger_type,
                Workflow.enabled.is_(True),
            )
        )
        return list(session.scalars(stmt.order_by(Workflow.created_at.asc(), Workflow.id.asc())).all())

    def list_enabled_by_trigger(self, session: Session, trigger_type: str) -> list[Workflow]:
        stmt: Select[tuple[Workflow]] = select(Workflow).where(
            and_(Workflow.trigger_type == trigger_type, Workflow.enabled.is_(True))
        )
        return list(session.scalars(stmt.order_by(Workflow.workspace_id.asc(), Workflow.created_at.asc())).all())

    def list_for_workspace(self, session: Session, workspace_id: str, *, enabled: bool | None = None) -> list[Workflow]:
        stmt: Select[tuple[Workflow]] = select(Workflow).where(Workflow.workspace_id == workspace_id)
        if enabled is not None:
            stmt = stmt.where(Workflow.enabled.is_(enabled))
        return list(session.scalars(stmt.order_by(Workflow.created_at.desc())).all())

    def get(self, session: Session, workflow_id: uuid.UUID) -> Workflow | None:
        return session.get(Workflow, workflow_id)

    def list_executions(self, session: Session, workflow_id: uuid.UUID, *, limit: int = 50) -> list[WorkflowExecution]:
        stmt = (
            select(WorkflowExecution)
            .where(WorkflowExecution.workflow_id == workflow_id)
            .order_by(WorkflowExecution.started_at.desc())
            .limit(limit)
        )
        return list(session.scalars(stmt).all())

    def last_execution(self, session: Session, workflow_id: uuid.UUID) -> WorkflowExecution | None:
        executions = self.list_executions(session, workflow_id, limit=1)
        return executions[0] if executions else None
