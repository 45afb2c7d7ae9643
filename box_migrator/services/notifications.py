"""
Email notifications for account holders and operators.

Delivery is a fire-and-forget side effect: a failed send is logged and
reported in the returned :class:`EmailResult`, but never raised into the
workflow that asked for it.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import requests

from box_migrator.constants import (
    USER_NOTIFICATION_BODY,
    USER_NOTIFICATION_FROM_NAME,
    USER_NOTIFICATION_SUBJECT,
)
from box_migrator.core.config import NotificationConfig
from box_migrator.utils.logging import log_api_request, log_with_context


@dataclass
class EmailMessage:
    """Email message structure."""

    to: list[str]
    subject: str
    text_body: str
    from_address: str = ""
    from_name: str = USER_NOTIFICATION_FROM_NAME


@dataclass
class EmailResult:
    """Result of an email send operation."""

    success: bool
    provider: str
    status_code: int | None = None
    error: str | None = None
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


class Notifier(Protocol):
    def send(self, message: EmailMessage) -> EmailResult: ...


class LoggingNotifier:
    """Notifier used when no SendGrid key is configured: logs instead of mailing."""

    def __init__(self) -> None:
        self.sent: list[EmailMessage] = []

    def send(self, message: EmailMessage) -> EmailResult:
        self.sent.append(message)
        log_with_context(
            logging.INFO,
            f"[EMAIL NOT SENT] To: {', '.join(message.to)} | Subject: {message.subject}",
            outcome="notification_logged",
        )
        return EmailResult(success=True, provider="log")


class SendGridNotifier:
    """Sends plain-text email through the SendGrid v3 API."""

    def __init__(
        self,
        config: NotificationConfig,
        session: requests.Session | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._config = config
        self._session = session or requests.Session()
        self._timeout = timeout

    def _payload(self, message: EmailMessage) -> dict[str, Any]:
        return {
            "personalizations": [{"to": [{"email": addr} for addr in message.to]}],
            "from": {
                "email": message.from_address or self._config.from_address,
                "name": message.from_name,
            },
            "subject": message.subject,
            "content": [{"type": "text/plain", "value": message.text_body}],
        }

    def send(self, message: EmailMessage) -> EmailResult:
        payload = self._payload(message)
        log_api_request("POST", self._config.sendgrid_url, payload)
        try:
            response = self._session.post(
                self._config.sendgrid_url,
                json=payload,
                headers={"Authorization": f"Bearer {self._config.sendgrid_api_key}"},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            log_with_context(
                logging.WARNING,
                f"Failed to send email '{message.subject}': {e}",
                outcome="notification_failed",
            )
            return EmailResult(success=False, provider="sendgrid", error=str(e))

        if not response.ok:
            log_with_context(
                logging.WARNING,
                f"SendGrid rejected email '{message.subject}' with {response.status_code}",
                status_code=response.status_code,
                response=response.text[:1000],
                outcome="notification_failed",
            )
            return EmailResult(
                success=False,
                provider="sendgrid",
                status_code=response.status_code,
                error=response.text,
            )

        log_with_context(
            logging.INFO,
            f"Sent email '{message.subject}' to {len(message.to)} recipient(s)",
            status_code=response.status_code,
            outcome="notification_sent",
        )
        return EmailResult(
            success=True, provider="sendgrid", status_code=response.status_code
        )


def build_notifier(config: NotificationConfig) -> Notifier:
    """Return a SendGrid notifier when a key is configured, otherwise a logging one."""
    if config.sendgrid_api_key:
        return SendGridNotifier(config)
    return LoggingNotifier()


def notify_account_holder(
    notifier: Notifier, config: NotificationConfig, login: str, user_id: str
) -> EmailResult:
    """Tell the account holder their account is now a personal account."""
    message = EmailMessage(
        to=[login],
        subject=USER_NOTIFICATION_SUBJECT,
        text_body=USER_NOTIFICATION_BODY,
        from_address=config.from_address,
    )
    result = notifier.send(message)
    log_with_context(
        logging.INFO if result.success else logging.WARNING,
        f"Account holder notification {'sent' if result.success else 'failed'}",
        user_id=user_id,
        user_login=login,
    )
    return result


def notify_operators(
    notifier: Notifier,
    config: NotificationConfig,
    subject: str,
    details: dict[str, Any],
) -> EmailResult | None:
    """Send an operator digest; does nothing when no operator address is set."""
    if not config.operator_addresses:
        log_with_context(
            logging.DEBUG, f"No operator addresses configured, digest '{subject}' not mailed"
        )
        return None
    body = json.dumps(details, indent=2, default=str)
    message = EmailMessage(
        to=list(config.operator_addresses),
        subject=subject,
        text_body=body,
        from_address=config.from_address,
    )
    return notifier.send(message)
