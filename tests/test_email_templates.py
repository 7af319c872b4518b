from datetime import datetime
from unittest.mock import AsyncMock

import aiosmtplib
import pytest
from jinja2.exceptions import UndefinedError

from app.core.config import settings
from app.services.email_service import EmailService
from app.services.email_templates import TEMPLATES, render

USER = {"email": "ada@example.com", "first_name": "Ada"}
SUBSCRIPTION = {
    "plan_code": "PRO_50",
    "trial_end": datetime(2026, 3, 10, 12, 0),
    "current_period_end": datetime(2026, 4, 10, 12, 0),
}


@pytest.fixture
def context():
    return EmailService().build_context(USER, SUBSCRIPTION, days_left=3)


@pytest.mark.parametrize("template_id", sorted(TEMPLATES))
def test_every_template_renders(template_id, context):
    email = render(template_id, context)

    assert email.subject
    assert "Hi Ada," in email.html
    assert "Hi Ada," in email.text
    assert context["cta_url"] in email.html


def test_context_formats_plan_and_dates(context):
    assert context["plan_name"] == "Pro-50"
    assert context["plan_price"] == "$29.99"
    assert context["trial_end_date"] == "Tuesday, March 10, 2026"
    assert context["name"] == "Ada"


def test_context_defaults_name():
    context = EmailService().build_context({"email": "x@example.com"}, {"plan_code": "STARTER"})
    assert context["name"] == "there"
    assert context["trial_end_date"] == "soon"


def test_reminder_subject_carries_days_left(context):
    assert render("reminder", context).subject == "Your LaunchZone trial ends in 3 days"


def test_html_escapes_user_input_but_text_does_not(context):
    context["name"] = "<b>Ada</b>"

    email = render("welcome", context)

    assert "&lt;b&gt;Ada&lt;/b&gt;" in email.html
    assert "<b>Ada</b>" not in email.html
    assert "Hi <b>Ada</b>," in email.text


def test_unknown_template():
    with pytest.raises(KeyError):
        render("farewell", {})


def test_missing_variable_is_an_error(context):
    del context["plan_name"]
    with pytest.raises(UndefinedError):
        render("welcome", context)


@pytest.mark.asyncio
async def test_send_without_smtp_host_is_a_soft_failure():
    assert await EmailService().send_email("ada@example.com", "Hello", "<p>hi</p>") is False


@pytest.mark.asyncio
async def test_send_uses_configured_smtp(monkeypatch):
    monkeypatch.setattr(settings, "SMTP_HOST", "smtp.example.com")
    transport = AsyncMock(return_value=({}, "OK"))
    monkeypatch.setattr(aiosmtplib, "send", transport)

    assert await EmailService().send_email("ada@example.com", "Hello", "<p>hi</p>", "hi") is True

    message = transport.await_args.args[0]
    assert message["To"] == "ada@example.com"
    assert message["Subject"] == "Hello"
    assert transport.await_args.kwargs["hostname"] == "smtp.example.com"
    assert transport.await_args.kwargs["port"] == settings.SMTP_PORT


@pytest.mark.asyncio
async def test_smtp_failure_returns_false(monkeypatch):
    monkeypatch.setattr(settings, "SMTP_HOST", "smtp.example.com")
    monkeypatch.setattr(aiosmtplib, "send", AsyncMock(side_effect=aiosmtplib.SMTPException("relay denied")))

    assert await EmailService().send_email("ada@example.com", "Hello", "<p>hi</p>") is False


@pytest.mark.asyncio
async def test_lifecycle_send_renders_template(monkeypatch):
    service = EmailService()
    sender = AsyncMock(return_value=True)
    monkeypatch.setattr(service, "send_email", sender)

    assert await service.send_trial_final_reminder_email(USER, SUBSCRIPTION) is True

    kwargs = sender.await_args.kwargs
    assert kwargs["to"] == "ada@example.com"
    assert kwargs["subject"] == "Last chance - Your LaunchZone trial ends tomorrow!"
    assert "Keep My Account" in kwargs["html"]
