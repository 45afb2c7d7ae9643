"""Unit tests for email notifications."""

from unittest.mock import MagicMock

import requests

from box_migrator.constants import USER_NOTIFICATION_SUBJECT
from box_migrator.core.config import NotificationConfig
from box_migrator.services.notifications import (
    EmailMessage,
    LoggingNotifier,
    SendGridNotifier,
    build_notifier,
    notify_account_holder,
    notify_operators,
)


def _config(**overrides):
    values = {
        "sendgrid_api_key": "SG.key",
        "from_address": "noreply@example.edu",
        "operator_addresses": ["ops@example.edu"],
    }
    values.update(overrides)
    return NotificationConfig(**values)


def _message():
    return EmailMessage(to=["alice@example.edu"], subject="Hi", text_body="Body")


class TestSendGridNotifier:
    """Tests for SendGridNotifier."""

    def test_successful_send(self):
        session = MagicMock()
        session.post.return_value = MagicMock(ok=True, status_code=202)
        notifier = SendGridNotifier(_config(), session=session)

        result = notifier.send(_message())

        assert result.success
        assert result.status_code == 202
        assert result.provider == "sendgrid"
        kwargs = session.post.call_args.kwargs
        assert kwargs["headers"] == {"Authorization": "Bearer SG.key"}
        payload = kwargs["json"]
        assert payload["personalizations"] == [{"to": [{"email": "alice@example.edu"}]}]
        assert payload["from"]["email"] == "noreply@example.edu"
        assert payload["content"] == [{"type": "text/plain", "value": "Body"}]

    def test_rejected_send_is_reported(self):
        session = MagicMock()
        session.post.return_value = MagicMock(ok=False, status_code=401, text="bad key")
        result = SendGridNotifier(_config(), session=session).send(_message())

        assert not result.success
        assert result.status_code == 401
        assert result.error == "bad key"

    def test_network_error_is_not_raised(self):
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("down")
        result = SendGridNotifier(_config(), session=session).send(_message())

        assert not result.success
        assert "down" in result.error


class TestBuildNotifier:
    """Tests for build_notifier."""

    def test_sendgrid_when_key_present(self):
        assert isinstance(build_notifier(_config()), SendGridNotifier)

    def test_logging_without_key(self):
        assert isinstance(build_notifier(_config(sendgrid_api_key="")), LoggingNotifier)


class TestNotifyHelpers:
    """Tests for the account holder and operator helpers."""

    def test_notify_account_holder(self):
        notifier = LoggingNotifier()
        result = notify_account_holder(notifier, _config(), "alice@example.edu", "1001")

        assert result.success
        (message,) = notifier.sent
        assert message.to == ["alice@example.edu"]
        assert message.subject == USER_NOTIFICATION_SUBJECT
        assert message.from_address == "noreply@example.edu"

    def test_notify_operators_serializes_details(self):
        notifier = LoggingNotifier()
        notify_operators(notifier, _config(), "Digest", {"failed": 2})

        (message,) = notifier.sent
        assert message.to == ["ops@example.edu"]
        assert '"failed": 2' in message.text_body

    def test_notify_operators_without_addresses(self):
        notifier = LoggingNotifier()
        assert notify_operators(notifier, _config(operator_addresses=[]), "D", {}) is None
        assert notifier.sent == []
