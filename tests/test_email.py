"""Tests for account email rendering and delivery."""

import smtplib

import pytest

from tourpass.service import email as email_module
from tourpass.service.email import EmailService, SenderIdentity


class _MutableSender:
    def __init__(self):
        self.identity = SenderIdentity("bookings@tourpass.test", "Tourpass", "help@tourpass.test")

    def __call__(self):
        return self.identity


@pytest.fixture
def sender():
    return _MutableSender()


def _service(sender, **kwargs):
    params = dict(sender=sender, base_url="https://tourpass.test/")
    params.update(kwargs)
    return EmailService(**params)


class TestMessage:
    def test_headers_come_from_sender_provider(self, sender):
        msg = _service(sender).build_message("ada@example.com", "Hi", "<p>hi</p>", "hi")
        assert msg["From"] == "Tourpass <bookings@tourpass.test>"
        assert msg["Reply-To"] == "help@tourpass.test"
        assert msg["To"] == "ada@example.com"

    def test_sender_changes_apply_without_rebuilding(self, sender):
        service = _service(sender)
        sender.identity = SenderIdentity("sales@tourpass.test", "Tourpass Sales")
        msg = service.build_message("ada@example.com", "Hi", "<p>hi</p>", "hi")
        assert msg["From"] == "Tourpass Sales <sales@tourpass.test>"
        assert msg["Reply-To"] is None


class TestDelivery:
    def test_unconfigured_service_logs_instead_of_sending(self, sender, monkeypatch):
        def _no_smtp(*args, **kwargs):
            raise AssertionError("SMTP must not be used without a host")

        monkeypatch.setattr(email_module.smtplib, "SMTP", _no_smtp)
        service = _service(sender)
        assert service.is_configured is False
        assert service.send_email_verification("ada@example.com", "tok") is True

    def test_links_carry_token(self, sender, monkeypatch):
        service = _service(sender)
        captured = {}

        def _fake_send(to_address, subject, html_body, text_body):
            captured.update(to=to_address, subject=subject, text=text_body)
            return True

        monkeypatch.setattr(service, "_send", _fake_send)
        service.send_email_verification("ada@example.com", "abc123")
        assert "https://tourpass.test/verify-email?token=abc123" in captured["text"]
        assert captured["subject"] == "Verify your Tourpass email"

        service.send_password_reset("ada@example.com", "xyz789")
        assert "https://tourpass.test/reset-password?token=xyz789" in captured["text"]
        assert "1 hour" in captured["text"]

    def test_transport_failure_returns_false(self, sender, monkeypatch):
        def _refuse(*args, **kwargs):
            raise ConnectionRefusedError("no smtp here")

        monkeypatch.setattr(email_module.smtplib, "SMTP", _refuse)
        service = _service(sender, smtp_host="smtp.tourpass.test")
        assert service.is_configured is True
        assert service.send_password_reset("ada@example.com", "tok") is False

    def test_smtp_error_returns_false(self, sender, monkeypatch):
        class _FailingSMTP:
            def __init__(self, *args, **kwargs):
                pass

            def __enter__(self):
                return self

            def __exit__(self, *exc):
                return False

            def starttls(self, context=None):
                raise smtplib.SMTPException("tls refused")

        monkeypatch.setattr(email_module.smtplib, "SMTP", _FailingSMTP)
        service = _service(sender, smtp_host="smtp.tourpass.test")
        assert service.send_email_verification("ada@example.com", "tok") is False
