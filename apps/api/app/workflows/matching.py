from __future__ import annotations

from collections.abc import Callable, Mapping
from decimal import Decimal, InvalidOperation
from typing import Any

from app.core.config import get_settings
from app.workflows.schemas import DomainEvent


Matcher = Callable[[Mapping[str, Any], Mapping[str, Any]], bool]

# Trigger config fields compared for equality against the event payload.
# An unset config field matches any payload value.
_EXACT_FIELDS: dict[str, tuple[str, ...]] = {
    "invoice_paid": ("client_id",),
    "funnel_step_completed": ("funnel_id", "step_type", "step_index"),
    "new_client_created": ("source",),
    "due_date_approaching": ("task_id",),
    "task_completed": ("task_id",),
}


def _is_unset(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _normalized(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _exact_match(fields: tuple[str, ...]) -> Matcher:
    def matcher(config: Mapping[str, Any], payload: Mapping[str, Any]) -> bool:
        for field_name in fields:
            expected = config.get(field_name)
            if _is_unset(expected):
                continue
            actual = payload.get(field_name)
            if _is_unset(actual) or _normalized(actual) != _normalized(expected):
                return False
        return True

    return matcher


def _within_days_before(config: Mapping[str, Any], payload: Mapping[str, Any]) -> bool:
    days_until_due = payload.get("days_until_due")
    if days_until_due is None:
        return True
    days_before = config.get("days_before")
    if days_before is None:
        days_before = get_settings().due_date_default_days_before
    try:
        return 0 <= int(days_until_due) <= int(days_before)
    except (TypeError, ValueError):
        return False


def _amount_threshold(config: Mapping[str, Any], payload: Mapping[str, Any]) -> bool:
    threshold = _to_decimal(config.get("amount_threshold"))
    if threshold is None:
        return True
    amount = _to_decimal(payload.get("amount"))
    return amount is not None and amount >= threshold


_EXTRA_MATCHERS: dict[str, tuple[Matcher, ...]] = {
    "invoice_paid": (_amount_threshold,),
    "due_date_approaching": (_within_days_before,),
}


def trigger_matches(trigger_type: str, trigger_config: Mapping[str, Any] | None, event: DomainEvent) -> bool:
    if trigger_type != event.kind:
        return False

    config = trigger_config or {}
    payload = event.payload or {}
    matchers = (_exact_match(_EXACT_FIELDS.get(trigger_type, ())), *_EXTRA_MATCHERS.get(trigger_type, ()))
    return all(matcher(config, payload) for matcher in matchers)
