from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.workflows.models import WorkflowExecution, utcnow
from app.workflows.schemas import DomainEvent


logger = logging.getLogger("app.workflows.idempotency")


class IdempotencyGuard:
    """At-most-once gate for (workflow, dedup key) pairs.

    The unique constraint on ``workflow_executions`` is the only
    serialization point: ``claim`` inserts a ``running`` row and commits, and
    whichever concurrent caller hits the IntegrityError has lost the race.
    """

    def get_record(self, session: Session, workflow_id: uuid.UUID, dedup_key: str) -> WorkflowExecution | None:
        return session.scalar(
            select(WorkflowExecution).where(
                and_(
                    WorkflowExecution.workflow_id == workflow_id,
                    WorkflowExecution.dedup_key == dedup_key,
                )
            )
        )

    def has_processed(self, session: Session, workflow_id: uuid.UUID, dedup_key: str) -> bool:
        return self.get_record(session, workflow_id, dedup_key) is not None

    def get_outcome(self, session: Session, workflow_id: uuid.UUID, dedup_key: str) -> str | None:
        record = self.get_record(session, workflow_id, dedup_key)
        return record.status if record is not None else None

    def claim(self, session: Session, workflow_id: uuid.UUID, event: DomainEvent) -> WorkflowExecution | None:
        execution = WorkflowExecution(
            workflow_id=workflow_id,
            workspace_id=event.workspace_id,
            dedup_key=event.dedup_key,
            event_kind=event.kind,
            event_payload=event.model_dump(mode="json")["payload"],
            status="running",
            action_results=[],
            correlation_id=get_correlation_id(),
        )
        session.add(execution)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.info(
                "workflow.claim.lost",
                extra={"workflow_id": str(workflow_id), "dedup_key": event.dedup_key, "event_kind": event.kind},
            )
            return None
        return execution

    def record(
        self,
        session: Session,
        execution_id: uuid.UUID,
        outcome: str,
        action_results: list[dict[str, Any]],
    ) -> WorkflowExecution:
        execution = session.get(WorkflowExecution, execution_id)
        if execution is None:
            raise LookupError(f"workflow execution {execution_id} not found")
        if execution.status != "running":
            # Finalised records are immutable.
            return execution

        execution.status = outcome
        execution.action_results = action_results
        execution.finished_at = utcnow()
        session.add(execution)
        session.commit()
        return execution
