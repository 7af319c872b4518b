from email.message import EmailMessage
from typing import Any, Dict, Optional

import aiosmtplib

from app.core.config import settings
from app.core.plans import PLAN_CONFIGS
from app.services.email_templates import render
import logging

logger = logging.getLogger(__name__)


def _format_date(value) -> str:
    if not value:
        return "soon"
    return f"{value:%A, %B} {value.day}, {value.year}"


def _format_price(cents: int) -> str:
    return f"${cents / 100:.2f}"


class EmailService:
    """SMTP transport plus the lifecycle sends built on top of it."""

    async def send_email(self, to: str, subject: str, html: str, text: Optional[str] = None) -> bool:
        """Send one message. Returns False instead of raising on any failure."""
        if not settings.SMTP_HOST:
            logger.warning(f"SMTP_HOST not configured; email '{subject}' to {to} not sent")
            return False

        message = EmailMessage()
        message["From"] = settings.EMAIL_FROM
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text or "This message requires an HTML-capable email client.")
        message.add_alternative(html, subtype="html")

        try:
            await aiosmtplib.send(
                message,
                hostname=settings.SMTP_HOST,
                port=settings.SMTP_PORT,
                username=settings.SMTP_USER,
                password=settings.SMTP_PASSWORD,
                start_tls=settings.SMTP_USE_TLS,
            )
            logger.info(f"Email '{subject}' sent to {to}")
            return True
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email '{subject}' to {to}: {e}")
            return False

    def build_context(self, user: Dict[str, Any], subscription: Dict[str, Any], **extra) -> Dict[str, Any]:
        plan = PLAN_CONFIGS.get(subscription.get("plan_code"), PLAN_CONFIGS["STARTER"])
        return {
            "name": user.get("first_name") or user.get("name") or "there",
            "plan_name": plan["name"],
            "plan_price": _format_price(plan["price"]),
            "trial_days": plan["trial_days"] or 7,
            "trial_end_date": _format_date(subscription.get("trial_end")),
            "period_end_date": _format_date(subscription.get("current_period_end")),
            "cta_url": f"{settings.FRONTEND_URL}/dashboard",
            **extra,
        }

    async def send_template(self, template_id: str, user: Dict[str, Any], subscription: Dict[str, Any], **extra) -> bool:
        email = render(template_id, self.build_context(user, subscription, **extra))
        return await self.send_email(to=user["email"], subject=email.subject, html=email.html, text=email.text)

    async def send_trial_welcome_email(self, user, subscription) -> bool:
        return await self.send_template("welcome", user, subscription)

    async def send_trial_reminder_email(self, user, subscription, days_left: int) -> bool:
        return await self.send_template("reminder", user, subscription, days_left=days_left)

    async def send_trial_final_reminder_email(self, user, subscription) -> bool:
        return await self.send_template("final_reminder", user, subscription)

    async def send_trial_conversion_email(self, user, subscription) -> bool:
        return await self.send_template("conversion", user, subscription)

    async def send_trial_ending_email(self, user, subscription) -> bool:
        return await self.send_template(
            "trial_ending", user, subscription, cta_url=f"{settings.FRONTEND_URL}/billing"
        )


email_service = EmailService()
