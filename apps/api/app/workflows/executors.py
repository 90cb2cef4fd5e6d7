from __future__ import annotations

import re
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Protocol

from fastapi import HTTPException
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from app.crm.service import BoardService, ClientService, MessagingError, MessagingService, TaskService
from app.integrations.email import EmailDeliveryError, HttpEmailSender
from app.workflows.errors import PermanentActionError, TransientActionError
from app.workflows.schemas import (
    CreateTaskConfig,
    DomainEvent,
    MoveCardConfig,
    SendChatMessageConfig,
    SendEmailConfig,
)


_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")


class EmailSender(Protocol):
    def send(self, recipient: str, subject: str, html: str) -> dict[str, Any]: ...


class ClientDirectory(Protocol):
    def get_client(self, session: Session, workspace_id: str, client_id: str) -> Any | None: ...

    def first_space_for_client(self, session: Session, workspace_id: str, client_id: str) -> Any | None: ...


class TaskManager(Protocol):
    def create(self, session: Session, workspace_id: str, fields: dict[str, Any]) -> str: ...


class BoardManager(Protocol):
    def find_card_for_client(
        self,
        session: Session,
        workspace_id: str,
        client_id: str,
        *,
        board_id: str | None = None,
    ) -> Any | None: ...

    def move_card(self, session: Session, card_id: str, column_id: str) -> Any: ...


class Messenger(Protocol):
    def get_or_create_conversation(self, session: Session, workspace_id: str, client_space_id: str) -> Any | None: ...

    def post_message(self, session: Session, conversation_id: str, content: str) -> Any: ...


@dataclass
class WorkflowCollaborators:
    email_sender: EmailSender
    clients: ClientDirectory
    tasks: TaskManager
    boards: BoardManager
    messaging: Messenger


def render_template(template: str | None, context: Mapping[str, Any]) -> str:
    """Replace ``{{key}}`` placeholders with context values.

    Unknown keys are left untouched so a typo stays visible in the output.
    """
    if not template:
        return ""

    def replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in context:
            return match.group(0)
        value = context[key]
        return "" if value is None else str(value)

    return _PLACEHOLDER_RE.sub(replace, template)


class ActionExecutor:
    kind: str = ""
    config_model: type[BaseModel] = BaseModel

    def __init__(self, collaborators: WorkflowCollaborators) -> None:
        self.collaborators = collaborators

    def execute(self, session: Session, config: Mapping[str, Any], event: DomainEvent) -> dict[str, Any]:
        raise NotImplementedError

    def parse_config(self, config: Mapping[str, Any]) -> Any:
        try:
            return self.config_model.model_validate(dict(config or {}))
        except ValidationError as exc:
            fields = sorted({".".join(str(part) for part in error["loc"]) or "config" for error in exc.errors()})
            raise PermanentActionError(f"invalid {self.kind} config", detail={"fields": fields}) from exc

    def template_context(self, session: Session, event: DomainEvent) -> dict[str, Any]:
        context: dict[str, Any] = dict(event.payload)
        context.setdefault("workspace_id", event.workspace_id)
        client_id = event.payload.get("client_id")
        if client_id:
            client = self.collaborators.clients.get_client(session, event.workspace_id, str(client_id))
            if client is not None:
                context["client_name"] = client.name or "Client"
                # The client record wins; the payload email is only a fallback.
                if client.email:
                    context["client_email"] = client.email
        return context

    @contextmanager
    def collaborator_errors(self) -> Iterator[None]:
        try:
            yield
        except HTTPException as exc:
            detail = {"status_code": exc.status_code}
            if exc.status_code == 429 or exc.status_code >= 500:
                raise TransientActionError(str(exc.detail), detail=detail) from exc
            raise PermanentActionError(str(exc.detail), detail=detail) from exc
        except LookupError as exc:
            raise PermanentActionError(str(exc)) from exc


class SendEmailExecutor(ActionExecutor):
    kind = "send_email"
    config_model = SendEmailConfig

    def execute(self, session: Session, config: Mapping[str, Any], event: DomainEvent) -> dict[str, Any]:
        parsed: SendEmailConfig = self.parse_config(config)
        context = self.template_context(session, event)
        recipient = self._resolve_recipient(parsed, event, context)
        if not recipient:
            raise PermanentActionError("recipient email not found", detail={"recipient": parsed.recipient})

        subject = render_template(parsed.subject, context)
        html = render_template(parsed.message, context)
        try:
            response = self.collaborators.email_sender.send(recipient, subject, html)
        except EmailDeliveryError as exc:
            detail = {"recipient": recipient, "status_code": exc.status_code}
            if exc.transient:
                raise TransientActionError(str(exc), detail=detail) from exc
            raise PermanentActionError(str(exc), detail=detail) from exc

        return {"recipient": recipient, "message_id": (response or {}).get("id")}

    def _resolve_recipient(self, parsed: SendEmailConfig, event: DomainEvent, context: Mapping[str, Any]) -> str | None:
        if parsed.recipient == "custom":
            return parsed.email
        if parsed.recipient == "assigned_user":
            value = event.payload.get("assigned_user_email")
            return str(value) if value else None
        value = context.get("client_email")
        return str(value) if value else None


class CreateTaskExecutor(ActionExecutor):
    kind = "create_task"
    config_model = CreateTaskConfig

    def execute(self, session: Session, config: Mapping[str, Any], event: DomainEvent) -> dict[str, Any]:
        parsed: CreateTaskConfig = self.parse_config(config)
        context = self.template_context(session, event)

        title = render_template(parsed.title, context).strip()
        if not title:
            raise PermanentActionError("task title is required")

        due_date = None
        if parsed.due_date_offset is not None:
            due_date = date.today() + timedelta(days=parsed.due_date_offset)

        client_id = event.payload.get("client_id")
        fields = {
            "title": title[:255],
            "description": render_template(parsed.description, context) or None,
            "priority": parsed.priority,
            "client_id": str(client_id) if client_id else None,
            "due_date": due_date,
            "assigned_to_user_id": parsed.assignee_user_id or event.payload.get("assigned_user_id"),
        }
        with self.collaborator_errors():
            task_id = self.collaborators.tasks.create(session, event.workspace_id, fields)
        return {"task_id": str(task_id), "due_date": due_date.isoformat() if due_date else None}


class MoveCardExecutor(ActionExecutor):
    kind = "move_card"
    config_model = MoveCardConfig

    def execute(self, session: Session, config: Mapping[str, Any], event: DomainEvent) -> dict[str, Any]:
        parsed: MoveCardConfig = self.parse_config(config)
        client_id = event.payload.get("client_id")
        if not client_id:
            raise PermanentActionError("client_id is required to move a card")

        with self.collaborator_errors():
            card = self.collaborators.boards.find_card_for_client(
                session,
                event.workspace_id,
                str(client_id),
                board_id=parsed.board_id,
            )
            if card is None:
                raise PermanentActionError("card not found for client", detail={"client_id": str(client_id)})
            from_column_id = card.column_id
            self.collaborators.boards.move_card(session, card.id, parsed.column_id)

        return {"card_id": str(card.id), "from_column_id": from_column_id, "to_column_id": parsed.column_id}


class SendChatMessageExecutor(ActionExecutor):
    kind = "send_chat_message"
    config_model = SendChatMessageConfig

    def execute(self, session: Session, config: Mapping[str, Any], event: DomainEvent) -> dict[str, Any]:
        parsed: SendChatMessageConfig = self.parse_config(config)
        context = self.template_context(session, event)
        content = render_template(parsed.message, context).strip()
        if not content:
            raise PermanentActionError("chat message is empty after rendering")

        with self.collaborator_errors():
            client_space_id = self._resolve_client_space_id(session, parsed, event)
            if client_space_id is None:
                raise PermanentActionError("no conversation context for event")
            conversation = self.collaborators.messaging.get_or_create_conversation(
                session,
                event.workspace_id,
                client_space_id,
            )
        if conversation is None:
            raise PermanentActionError("client space not found", detail={"client_space_id": client_space_id})

        try:
            message = self.collaborators.messaging.post_message(session, conversation.id, content)
        except MessagingError as exc:
            detail = {"conversation_id": str(conversation.id)}
            if exc.transient:
                raise TransientActionError(str(exc), detail=detail) from exc
            raise PermanentActionError(str(exc), detail=detail) from exc

        return {"conversation_id": str(conversation.id), "message_id": str(message.id)}

    def _resolve_client_space_id(
        self,
        session: Session,
        parsed: SendChatMessageConfig,
        event: DomainEvent,
    ) -> str | None:
        if parsed.client_space_id:
            return parsed.client_space_id
        payload_space_id = event.payload.get("client_space_id")
        if payload_space_id:
            return str(payload_space_id)
        client_id = event.payload.get("client_id")
        if not client_id:
            return None
        space = self.collaborators.clients.first_space_for_client(session, event.workspace_id, str(client_id))
        return str(space.id) if space is not None else None


class ActionExecutorRegistry:
    def __init__(self) -> None:
        self._executors: dict[str, ActionExecutor] = {}

    def register(self, executor: ActionExecutor) -> None:
        if not executor.kind:
            raise ValueError("executor kind is required")
        self._executors[executor.kind] = executor

    def get(self, kind: str) -> ActionExecutor:
        executor = self._executors.get(kind)
        if executor is None:
            raise PermanentActionError(f"unsupported action type: {kind}")
        return executor

    def kinds(self) -> list[str]:
        return sorted(self._executors)


def build_registry(collaborators: WorkflowCollaborators) -> ActionExecutorRegistry:
    registry = ActionExecutorRegistry()
    for executor_cls in (SendEmailExecutor, CreateTaskExecutor, MoveCardExecutor, SendChatMessageExecutor):
        registry.register(executor_cls(collaborators))
    return registry


def default_collaborators() -> WorkflowCollaborators:
    return WorkflowCollaborators(
        email_sender=HttpEmailSender.from_settings(),
        clients=ClientService(),
        tasks=TaskService(),
        boards=BoardService(),
        messaging=MessagingService(),
    )
