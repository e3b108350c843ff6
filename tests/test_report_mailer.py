from __future__ import annotations

import smtplib

from flask import Flask

from unblocker.reports.email_sender import ReportMailer


class _FakeSMTP:
    instances = []

    def __init__(self, *args, **kwargs):
        self.started_tls = False
        self.logged_in = False
        self.messages = []
        _FakeSMTP.instances.append(self)

    def starttls(self):
        self.started_tls = True

    def login(self, user, pwd):
        self.logged_in = bool(user and pwd)

    def send_message(self, msg):
        self.messages.append(msg)

    def quit(self):
        return None


class _BrokenSMTP(_FakeSMTP):
    def login(self, user, pwd):
        raise smtplib.SMTPAuthenticationError(535, b"bad credentials")


def _app():
    app = Flask(__name__)
    app.config.update(
        MAIL_SERVER="smtp.example.com",
        MAIL_PORT=587,
        MAIL_USERNAME="u@example.com",
        MAIL_PASSWORD="secret",
        MAIL_USE_TLS=True,
        MAIL_DEFAULT_SENDER="unblock@example.com",
    )
    return app


def test_report_mailer_send(monkeypatch):
    _FakeSMTP.instances = []
    monkeypatch.setattr("smtplib.SMTP", _FakeSMTP)

    with _app().app_context():
        ok = ReportMailer().send(["a@example.com", ""], "subj", "body")

    assert ok is True
    smtp = _FakeSMTP.instances[0]
    assert smtp.started_tls and smtp.logged_in
    msg = smtp.messages[0]
    assert msg["To"] == "a@example.com"
    assert msg["From"] == "unblock@example.com"


def test_report_mailer_unconfigured_skips():
    app = Flask(__name__)
    with app.app_context():
        assert ReportMailer().send(["a@example.com"], "subj", "body") is False


def test_report_mailer_smtp_error_returns_false(monkeypatch):
    monkeypatch.setattr("smtplib.SMTP", _BrokenSMTP)

    with _app().app_context():
        assert ReportMailer().send(["a@example.com"], "subj", "body") is False


def test_report_mailer_no_recipients():
    with _app().app_context():
        assert ReportMailer().send([], "subj", "body") is False
