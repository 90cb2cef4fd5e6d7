from __future__ import annotations

import logging
from typing import Any

import httpx

from app.core.config import get_settings


logger = logging.getLogger("app.integrations.email")

_TRANSIENT_STATUS_CODES = {408, 409, 425, 429}


class EmailDeliveryError(Exception):
    def __init__(self, message: str, *, transient: bool, status_code: int | None = None) -> None:
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


class HttpEmailSender:
    """Sends mail through a Resend-compatible HTTP API."""

    def __init__(
        self,
        api_url: str,
        api_key: str | None,
        from_address: str,
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.from_address = from_address
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls) -> "HttpEmailSender":
        settings = get_settings()
        return cls(
            settings.email_api_url,
            settings.email_api_key,
            settings.email_from_address,
            timeout=settings.workflow_action_timeout_seconds,
        )

    def send(self, recipient: str, subject: str, html: str) -> dict[str, Any]:
        if not self.api_key:
            raise EmailDeliveryError("email delivery is not configured", transient=False)

        body = {"from": self.from_address, "to": [recipient], "subject": subject, "html": html}
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(self.api_url, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("email.send.timeout", extra={"recipient": recipient, "error": str(exc)})
            raise EmailDeliveryError("email provider timed out", transient=True) from exc
        except httpx.TransportError as exc:
            logger.warning("email.send.transport_error", extra={"recipient": recipient, "error": str(exc)})
            raise EmailDeliveryError("email provider unreachable", transient=True) from exc

        if response.status_code >= 400:
            transient = response.status_code in _TRANSIENT_STATUS_CODES or response.status_code >= 500
            logger.warning(
                "email.send.rejected",
                extra={
                    "recipient": recipient,
                    "status_code": response.status_code,
                    "transient": transient,
                    "error": response.text,
                },
            )
            raise EmailDeliveryError(
                f"email provider returned {response.status_code}",
                transient=transient,
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        logger.info("email.send.accepted", extra={"recipient": recipient, "status_code": response.status_code})
        return payload if isinstance(payload, dict) else {}
