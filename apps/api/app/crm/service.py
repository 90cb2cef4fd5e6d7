from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import Select, and_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import audit
from app.core.events import InProcessEventBus, event_bus
from app.crm.models import Board, BoardColumn, Card, Client, ClientSpace, Conversation, Invoice, Message, Task, utcnow
from app.crm.schemas import ClientCreate, ClientRead, InvoiceRead, TaskCreate, TaskRead
from app.workflows import producers


logger = logging.getLogger("app.crm")

CHAT_MESSAGE_TOPIC = "chat.message.created"


@dataclass
class ActorUser:
    user_id: str
    workspace_id: str | None
    workspace_ids: list[str] = field(default_factory=list)
    permissions: set[str] = field(default_factory=set)
    is_admin: bool = False
    correlation_id: str | None = None


def require_workspace(actor_user: ActorUser) -> str:
    if not actor_user.workspace_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="x-workspace-id header is required")
    if not actor_user.is_admin and actor_user.workspace_id not in actor_user.workspace_ids:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="workspace access denied")
    return actor_user.workspace_id


class MessagingError(Exception):
    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class ClientService:
    def create_client(self, session: Session, actor_user: ActorUser, dto: ClientCreate) -> ClientRead:
        workspace_id = require_workspace(actor_user)
        client = Client(
            workspace_id=workspace_id,
            name=dto.name.strip(),
            email=str(dto.email) if dto.email else None,
            phone=dto.phone,
            source=dto.source,
        )
        session.add(client)
        session.flush()
        if dto.create_space:
            session.add(ClientSpace(workspace_id=workspace_id, client_id=client.id, name=client.name))

        read = ClientRead.model_validate(client)
        audit.record(
            actor_user_id=actor_user.user_id,
            workspace_id=workspace_id,
            entity_type="crm.client",
            entity_id=client.id,
            action="client.created",
            before=None,
            after=read.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()

        producers.emit(producers.client_created_event(client))
        return read

    def list_clients(self, session: Session, actor_user: ActorUser) -> list[ClientRead]:
        workspace_id = require_workspace(actor_user)
        rows = session.scalars(
            select(Client).where(Client.workspace_id == workspace_id).order_by(Client.created_at.desc())
        ).all()
        return [ClientRead.model_validate(row) for row in rows]

    def get_client(self, session: Session, workspace_id: str, client_id: str) -> Client | None:
        client = session.get(Client, client_id)
        if client is None or client.workspace_id != workspace_id:
            return None
        return client

    def first_space_for_client(self, session: Session, workspace_id: str, client_id: str) -> ClientSpace | None:
        return session.scalar(
            select(ClientSpace)
            .where(and_(ClientSpace.workspace_id == workspace_id, ClientSpace.client_id == client_id))
            .order_by(ClientSpace.created_at.asc(), ClientSpace.id.asc())
            .limit(1)
        )


class TaskService:
    def create(self, session: Session, workspace_id: str, fields: dict[str, Any]) -> str:
        task = Task(
            workspace_id=workspace_id,
            title=fields["title"],
            description=fields.get("description"),
            priority=fields.get("priority") or "medium",
            due_date=fields.get("due_date"),
            client_id=fields.get("client_id"),
            assigned_to_user_id=fields.get("assigned_to_user_id"),
            status="todo",
        )
        session.add(task)
        session.flush()
        return task.id

    def create_task(self, session: Session, actor_user: ActorUser, dto: TaskCreate) -> TaskRead:
        workspace_id = require_workspace(actor_user)
        if dto.client_id is not None and ClientService().get_client(session, workspace_id, dto.client_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="client not found")

        task_id = self.create(session, workspace_id, dto.model_dump())
        session.commit()
        return TaskRead.model_validate(session.get(Task, task_id))

    def list_tasks(self, session: Session, actor_user: ActorUser, *, task_status: str | None = None) -> list[TaskRead]:
        workspace_id = require_workspace(actor_user)
        stmt: Select[tuple[Task]] = select(Task).where(Task.workspace_id == workspace_id)
        if task_status:
            stmt = stmt.where(Task.status == task_status)
        rows = session.scalars(stmt.order_by(Task.due_date.asc(), Task.created_at.asc())).all()
        return [TaskRead.model_validate(row) for row in rows]

    def complete_task(self, session: Session, actor_user: ActorUser, task_id: str) -> TaskRead:
        workspace_id = require_workspace(actor_user)
        task = session.get(Task, task_id)
        if task is None or task.workspace_id != workspace_id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="task not found")

        if task.status != "done":
            before = TaskRead.model_validate(task).model_dump(mode="json")
            task.status = "done"
            task.completed_at = utcnow()
            session.add(task)
            session.flush()
            audit.record(
                actor_user_id=actor_user.user_id,
                workspace_id=workspace_id,
                entity_type="crm.task",
                entity_id=task.id,
                action="task.completed",
                before=before,
                after=TaskRead.model_validate(task).model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            session.commit()

        read = TaskRead.model_validate(task)
        producers.emit(producers.task_completed_event(task))
        return read


class BoardService:
    def find_card_for_client(
        self,
        session: Session,
        workspace_id: str,
        client_id: str,
        *,
        board_id: str | None = None,
    ) -> Card | None:
        stmt = (
            select(Card)
            .join(Board, Board.id == Card.board_id)
            .where(and_(Board.workspace_id == workspace_id, Card.client_id == client_id))
        )
        if board_id:
            stmt = stmt.where(Card.board_id == board_id)
        return session.scalar(stmt.order_by(Card.created_at.asc(), Card.id.asc()).limit(1))

    def move_card(self, session: Session, card_id: str, column_id: str) -> Card:
        card = session.get(Card, card_id)
        if card is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="card not found")
        column = session.get(BoardColumn, column_id)
        if column is None or column.board_id != card.board_id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="column not found on card's board")

        if card.column_id != column.id:
            card.column_id = column.id
            card.moved_at = utcnow()
            session.add(card)
            session.flush()
        return card


class MessagingService:
    """Durable chat messages plus a best-effort real-time broadcast."""

    def __init__(self, bus: InProcessEventBus | None = None) -> None:
        self.bus = bus or event_bus

    def get_or_create_conversation(self, session: Session, workspace_id: str, client_space_id: str) -> Conversation | None:
        space = session.get(ClientSpace, client_space_id)
        if space is None or space.workspace_id != workspace_id:
            return None

        conversation = session.scalar(
            select(Conversation)
            .where(Conversation.client_space_id == space.id)
            .order_by(Conversation.created_at.asc(), Conversation.id.asc())
            .limit(1)
        )
        if conversation is None:
            conversation = Conversation(workspace_id=workspace_id, client_space_id=space.id, title="Workflow Message")
            session.add(conversation)
            session.flush()
        return conversation

    def post_message(
        self,
        session: Session,
        conversation_id: str,
        content: str,
        *,
        sender_type: str = "system",
        sender_id: str | None = None,
    ) -> Message:
        message = Message(
            conversation_id=conversation_id,
            content=content,
            sender_type=sender_type,
            sender_id=sender_id,
        )
        session.add(message)
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise MessagingError("message could not be stored", transient=True) from exc

        # Subscribers only ever see committed messages.
        self._broadcast(message)
        return message

    def _broadcast(self, message: Message) -> None:
        payload = {
            "message_id": message.id,
            "conversation_id": message.conversation_id,
            "sender_type": message.sender_type,
            "content": message.content,
        }
        try:
            self.bus.publish(CHAT_MESSAGE_TOPIC, payload)
        except Exception as exc:
            logger.warning("chat.broadcast_failed", extra={"event_name": CHAT_MESSAGE_TOPIC, "error": str(exc)})


class InvoiceService:
    def mark_paid(self, session: Session, invoice_id: str, *, workspace_id: str | None = None) -> InvoiceRead:
        invoice = session.get(Invoice, invoice_id)
        if invoice is None or (workspace_id is not None and invoice.workspace_id != workspace_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="invoice not found")

        if invoice.status != "paid":
            before = InvoiceRead.model_validate(invoice).model_dump(mode="json")
            invoice.status = "paid"
            invoice.paid_at = utcnow()
            session.add(invoice)
            session.flush()
            audit.record(
                actor_user_id="system",
                workspace_id=invoice.workspace_id,
                entity_type="crm.invoice",
                entity_id=invoice.id,
                action="invoice.paid",
                before=before,
                after=InvoiceRead.model_validate(invoice).model_dump(mode="json"),
            )
            session.commit()

        read = InvoiceRead.model_validate(invoice)
        # Re-emitted for already paid invoices so a redelivered webhook replays instead of being lost.
        producers.emit(producers.invoice_paid_event(invoice))
        return read
