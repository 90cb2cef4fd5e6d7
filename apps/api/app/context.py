from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
dedup_key_var: ContextVar[str | None] = ContextVar("dedup_key", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_dedup_key(value: str | None) -> Token[str | None]:
    return dedup_key_var.set(value)


def reset_dedup_key(token: Token[str | None]) -> None:
    dedup_key_var.reset(token)


def get_dedup_key() -> str | None:
    return dedup_key_var.get()


def get_log_context() -> dict[str, str | None]:
    return {"correlation_id": get_correlation_id(), "dedup_key": get_dedup_key()}
