"""Dunning notifications — email and SMS sent off reconciliation outcomes.

Reconciliation only decides *when* to notify. Sending goes through a
``Notifier`` so it can be swapped in tests, and every call from the webhook
path goes through :func:`dispatch_safely` so a broken SMTP server or SMS
provider can never fail a webhook.
"""

import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from typing import Any, Protocol

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from memberhub.config import settings
from memberhub.database import insert_ignoring_conflict
from memberhub.models.system_setting import SystemSetting
from memberhub.models.user import User

logger = logging.getLogger(__name__)

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


class NotificationKind(str, Enum):
    RETRY = "retry"
    SUSPENDED = "suspended"
    RECOVERED = "recovered"
    ACTION_REQUIRED = "action_required"


TEMPLATES: dict[NotificationKind, dict[str, str]] = {
    NotificationKind.RETRY: {
        "subject": "Payment failed - we'll retry (attempt {attempt} of {total_attempts})",
        "body": (
            "Hi {first_name},\n\n"
            "We couldn't take your membership payment of £{amount:.2f} "
            "(attempt {attempt} of {total_attempts}). Reason: {reason}.\n\n"
            "We will try again on {next_retry}. To avoid any interruption, "
            "please check or update your card here:\n{manage_url}\n\n"
            "Thank you,\nMemberhub"
        ),
        "sms": (
            "Payment failed (attempt {attempt}/{total_attempts}). "
            "We will retry on {next_retry}. Update card: {manage_url}"
        ),
    },
    NotificationKind.SUSPENDED: {
        "subject": "Membership suspended - payment required",
        "body": (
            "Hi {first_name},\n\n"
            "We've been unable to collect your membership payment of £{amount:.2f} "
            "after {total_attempts} attempts. Reason: {reason}.\n\n"
            "Your access has been suspended. Update your card to restore it:\n"
            "{manage_url}\n\n"
            "Thank you,\nMemberhub"
        ),
        "sms": (
            "Payment failed {total_attempts}/{total_attempts}. Access suspended. "
            "Update card to restore access: {manage_url}"
        ),
    },
    NotificationKind.RECOVERED: {
        "subject": "Payment received - access restored",
        "body": (
            "Hi {first_name},\n\n"
            "Thanks, we've received your payment of £{amount:.2f}. "
            "Your membership is active again.\n\n"
            "Thank you,\nMemberhub"
        ),
        "sms": "Payment received. Your access has been restored.",
    },
    NotificationKind.ACTION_REQUIRED: {
        "subject": "Action needed to complete your payment",
        "body": (
            "Hi {first_name},\n\n"
            "Your bank needs you to confirm your membership payment of £{amount:.2f} "
            "(attempt {attempt} of {total_attempts}). Complete it here:\n{action_url}\n\n"
            "Thank you,\nMemberhub"
        ),
        "sms": (
            "Payment needs authentication (attempt {attempt}/{total_attempts}). "
            "Complete here: {action_url}"
        ),
    },
}


class Notifier(Protocol):
    """Anything that can deliver a dunning notification to a member."""

    async def notify(
        self, db: AsyncSession, kind: NotificationKind, user: User, **context: Any
    ) -> None: ...


def idempotency_key(kind: NotificationKind, invoice_id: str | None, attempt: int | None) -> str:
    return f"dunning:{kind.value}:{invoice_id or '-'}:{attempt or 0}"


def render(kind: NotificationKind, user: User, **context: Any) -> tuple[str, str, str]:
    """Return (subject, email body, sms body) for a notification."""
    values: dict[str, Any] = {
        "first_name": user.first_name or "there",
        "amount": 0.0,
        "attempt": 1,
        "total_attempts": settings.dunning_max_attempts,
        "next_retry": "the next retry date",
        "reason": "Payment declined",
        "manage_url": settings.manage_payment_url,
    }
    values.update({k: v for k, v in context.items() if v is not None})
    values.setdefault("action_url", values.get("hosted_invoice_url") or values["manage_url"])
    template = TEMPLATES[kind]
    return (
        template["subject"].format(**values),
        template["body"].format(**values),
        template["sms"].format(**values),
    )


def _send_smtp(to_email: str, subject: str, body_text: str) -> None:
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = settings.smtp_from
    msg["To"] = to_email
    msg.attach(MIMEText(body_text, "plain"))

    if settings.smtp_port == 465:
        server = smtplib.SMTP_SSL(settings.smtp_host, settings.smtp_port, timeout=30)
    else:
        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30)
        server.starttls()
    try:
        if settings.smtp_username and settings.smtp_password:
            server.login(settings.smtp_username, settings.smtp_password)
        server.sendmail(settings.smtp_from, to_email, msg.as_string())
    finally:
        server.quit()


async def send_email(to_email: str, subject: str, body_text: str) -> bool:
    """Send a plain-text email over SMTP without blocking the event loop."""
    if not settings.smtp_host:
        logger.warning("SMTP not configured, skipping email to %s", to_email)
        return False
    try:
        await asyncio.to_thread(_send_smtp, to_email, subject, body_text)
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Failed to send email to %s: %s", to_email, exc)
        return False
    logger.info("Email sent to %s: %s", to_email, subject)
    return True


async def send_sms(to_number: str, body: str) -> bool:
    """Send an SMS through Twilio's REST API."""
    sid = settings.twilio_account_sid
    if not (sid and settings.twilio_auth_token and settings.twilio_from_number):
        logger.warning("Twilio not configured, skipping SMS to %s", to_number)
        return False
    try:
        async with httpx.AsyncClient(timeout=15.0) as client:
            response = await client.post(
                TWILIO_MESSAGES_URL.format(sid=sid),
                auth=(sid, settings.twilio_auth_token),
                data={"From": settings.twilio_from_number, "To": to_number, "Body": body},
            )
            response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.error("Twilio SMS to %s failed: %s", to_number, exc)
        return False
    logger.info("SMS sent to %s", to_number)
    return True


class DunningNotifier:
    """Default notifier: email and/or SMS, each guarded by an idempotency key."""

    async def notify(
        self, db: AsyncSession, kind: NotificationKind, user: User, **context: Any
    ) -> None:
        attempt = context.get("attempt")
        send_mail = bool(
            settings.dunning_email_enabled
            and user.email
            and (kind != NotificationKind.RETRY or attempt in settings.email_attempt_set)
        )
        send_text = bool(settings.dunning_sms_enabled and user.phone)
        if not (send_mail or send_text):
            logger.debug("No notification channel enabled for %s (%s)", user.id, kind.value)
            return

        key = idempotency_key(kind, context.get("invoice_id"), attempt)
        async with db.begin_nested():
            is_new = await insert_ignoring_conflict(
                db,
                SystemSetting,
                {"key": key, "value": "1", "category": "dunning", "description": f"dunning-{kind.value}"},
                conflict_column="key",
            )
        if not is_new:
            logger.info("Notification %s already sent, skipping", key)
            return

        subject, body, sms = render(kind, user, **context)
        if send_mail:
            await send_email(user.email, subject, body)
        if send_text:
            await send_sms(user.phone, sms)


async def dispatch_safely(
    notifier: Notifier,
    db: AsyncSession,
    kind: NotificationKind,
    user: User,
    **context: Any,
) -> bool:
    """Fire-and-log wrapper: notification failures never propagate."""
    try:
        await notifier.notify(db, kind, user, **context)
    except Exception:
        logger.exception("Notification %s for user %s failed", kind.value, user.id)
        return False
    return True


def get_notifier() -> Notifier:
    """FastAPI dependency for the active notifier."""
    return DunningNotifier()
