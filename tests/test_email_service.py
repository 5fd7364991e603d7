"""
HR Process Engine
Tests — Email Service (log-only mode, templates, SMTP failure handling).
"""

import smtplib

from hrflow.services.email_service import EmailService, mask_email


def test_mask_email():
    assert mask_email("jane.doe@example.com") == "j***@example.com"
    assert mask_email("nonsense") == "***"
    assert mask_email(None) == "***"


def test_log_only_mode_marks_sent():
    log = EmailService.send(to_email="a@b.io", subject="Hi", html_body="<p>x</p>")
    assert log.status == "sent"
    assert log.sent_at is not None


def test_unknown_template_falls_back_to_default():
    log = EmailService.send_from_template(
        to_email="a@b.io", subject="About {stageName}", template_name="missing",
        context={"name": "<b>Jane</b>", "stageName": "Apply"},
    )
    assert log.subject == "About Apply"
    assert log.template_name == "missing"
    assert log.payload == {"name": "<b>Jane</b>", "stageName": "Apply"}


def test_smtp_failure_recorded(app, monkeypatch):
    monkeypatch.setitem(app.config, "MAIL_SERVER", "smtp.invalid")

    def _fail(**kwargs):
        raise smtplib.SMTPException("relay denied")

    monkeypatch.setattr(EmailService, "_send_smtp", staticmethod(_fail))

    log = EmailService.send(to_email="a@b.io", subject="Hi", html_body="x")
    assert log.status == "failed"
    assert log.error_message == "relay denied"
