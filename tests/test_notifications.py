"""Tests for SMS/email delivery and the notification dispatcher."""

import json
import smtplib

import httpx

from campusauth.service.codes import CodePurpose
from campusauth.service.email import EmailService
from campusauth.service.notifications import NotificationDispatcher
from campusauth.service.sms import SmsService

PHONE = "+919876543210"


def _sms(handler, **kwargs):
    return SmsService(
        gateway_url="https://sms.example/api/v2/sendsms",
        api_key="key-123",
        backoff_seconds=0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestSmsService:
    async def test_sends_gateway_payload(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"type": "success", "message": "msg-1"})

        assert await _sms(handler).send_verification_code(PHONE, "482913") is True
        (request,) = seen
        body = json.loads(request.content)
        assert request.headers["authkey"] == "key-123"
        assert body["sms"][0]["to"] == ["9876543210"]
        assert "482913" in body["sms"][0]["message"]

    async def test_retries_then_succeeds(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503, json={"type": "error", "message": "busy"})
            return httpx.Response(200, json={"type": "success", "message": "msg-2"})

        assert await _sms(handler).send(PHONE, "hello") is True
        assert len(calls) == 3

    async def test_gives_up_after_max_attempts(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("unreachable", request=request)

        assert await _sms(handler, max_attempts=2).send(PHONE, "hello") is False
        assert len(calls) == 2

    async def test_gateway_error_body_is_a_failure(self):
        def handler(request):
            return httpx.Response(200, json={"type": "error", "message": "bad sender"})

        assert await _sms(handler, max_attempts=1).send(PHONE, "hello") is False

    async def test_unconfigured_gateway_is_dev_mode(self):
        assert await SmsService().send(PHONE, "hello") is True

    def test_backoff_is_capped(self):
        service = SmsService(backoff_seconds=1.0, backoff_cap_seconds=5.0)
        assert [service._backoff(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]


class _FakeSMTP:
    sent = []
    failures = 0

    def __init__(self, host, port, timeout=None):
        self.host = host

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        pass

    def login(self, user, password):
        pass

    def sendmail(self, sender, recipient, message):
        if _FakeSMTP.failures:
            _FakeSMTP.failures -= 1
            raise smtplib.SMTPServerDisconnected("dropped")
        _FakeSMTP.sent.append((sender, recipient, message))


class TestEmailService:
    def _service(self, monkeypatch, failures=0):
        _FakeSMTP.sent = []
        _FakeSMTP.failures = failures
        monkeypatch.setattr(smtplib, "SMTP", _FakeSMTP)
        return EmailService(
            smtp_host="smtp.example",
            from_email="noreply@campus.example",
            backoff_seconds=0,
        )

    def test_reset_code_email(self, monkeypatch):
        service = self._service(monkeypatch)
        assert service.send_password_reset_code("parent@campus.example", "731204") is True
        ((sender, recipient, message),) = _FakeSMTP.sent
        assert recipient == "parent@campus.example"
        assert "731204" in message

    def test_retry_after_transient_failure(self, monkeypatch):
        service = self._service(monkeypatch, failures=2)
        assert service.send_verification_code("parent@campus.example", "111222") is True
        assert len(_FakeSMTP.sent) == 1

    def test_gives_up(self, monkeypatch):
        service = self._service(monkeypatch, failures=5)
        assert service.send_account_locked_notice("parent@campus.example", 30) is False

    def test_unconfigured_is_dev_mode(self):
        assert EmailService().send_verification_code("parent@campus.example", "123456") is True

    def test_redacts_recipient(self):
        assert EmailService()._redact_email("parent@campus.example") == "pa***@campus.example"


class TestDispatcher:
    async def test_routes_by_channel_and_purpose(self, monkeypatch):
        calls = []
        email = EmailService()
        sms = SmsService()
        monkeypatch.setattr(
            email, "send_password_reset_code", lambda to, code: calls.append(("email-reset", to)) or True
        )

        async def fake_sms(phone, code):
            calls.append(("sms-code", phone))
            return True

        monkeypatch.setattr(sms, "send_verification_code", fake_sms)
        dispatcher = NotificationDispatcher(email, sms)

        assert await dispatcher.send_code("email", "a@campus.example", CodePurpose.PASSWORD_RESET, "1")
        assert await dispatcher.send_code("sms", PHONE, CodePurpose.LOGIN_OTP, "2")
        assert await dispatcher.send_code("fax", "x", CodePurpose.MFA, "3") is False
        assert calls == [("email-reset", "a@campus.example"), ("sms-code", PHONE)]
