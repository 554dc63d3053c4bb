import smtplib

import pytest

from learnquest.config import SmtpSecurity
from learnquest.service import email as email_module
from learnquest.service.email import EmailService


class FakeSMTP:
    instances: list = []

    def __init__(self, host, port, timeout=None, context=None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.context = context
        self.started_tls = False
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def sendmail(self, from_addr, to_addr, body):
        self.sent.append((from_addr, to_addr, body))


class RefusingSMTP(FakeSMTP):
    def sendmail(self, from_addr, to_addr, body):
        raise smtplib.SMTPRecipientsRefused({to_addr: (550, b"no such user")})


@pytest.fixture(autouse=True)
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(email_module.smtplib, "SMTP_SSL", FakeSMTP)
    return FakeSMTP


def _service(**overrides):
    options = dict(
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="mailer@example.com",
        smtp_password="hunter2",
        from_email="noreply@example.com",
    )
    options.update(overrides)
    return EmailService(**options)


def test_unconfigured_service_logs_and_reports_success():
    service = EmailService()
    assert not service.is_configured
    assert service.send("a@x.com", "Subject", "<p>hi</p>", "hi") is True
    assert FakeSMTP.instances == []


def test_starttls_send_logs_in_and_delivers():
    service = _service()
    assert service.send("a@x.com", "Subject", "<p>hi</p>", "hi") is True

    (server,) = FakeSMTP.instances
    assert (server.host, server.port) == ("smtp.example.com", 587)
    assert server.started_tls
    assert server.logged_in == ("mailer@example.com", "hunter2")
    from_addr, to_addr, body = server.sent[0]
    assert from_addr == "noreply@example.com"
    assert to_addr == "a@x.com"
    assert "Subject: Subject" in body
    assert "LearnQuest <noreply@example.com>" in body


def test_ssl_mode_skips_starttls():
    service = _service(smtp_port=465, security=SmtpSecurity.SSL)
    assert service.send("a@x.com", "Subject", "<p>hi</p>") is True
    (server,) = FakeSMTP.instances
    assert server.context is not None
    assert not server.started_tls


def test_plain_mode_without_credentials_skips_login():
    service = _service(security=SmtpSecurity.NONE, smtp_user=None, smtp_password=None)
    assert service.send("a@x.com", "Subject", "<p>hi</p>") is True
    (server,) = FakeSMTP.instances
    assert not server.started_tls
    assert server.logged_in is None


def test_from_address_defaults_to_smtp_user():
    service = _service(from_email=None)
    assert service.from_email == "mailer@example.com"


def test_smtp_failure_returns_false(monkeypatch):
    monkeypatch.setattr(email_module.smtplib, "SMTP", RefusingSMTP)
    assert _service().send("a@x.com", "Subject", "<p>hi</p>") is False


def test_connection_failure_returns_false(monkeypatch):
    def refuse(*args, **kwargs):
        raise ConnectionRefusedError("connection refused")

    monkeypatch.setattr(email_module.smtplib, "SMTP", refuse)
    assert _service().send("a@x.com", "Subject", "<p>hi</p>") is False
