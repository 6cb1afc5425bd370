"""Scheduled email queue and delivery via the Resend HTTP API."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from clinicops.core.config import settings
from clinicops.db.enums import ScheduledEmailStatus
from clinicops.db.models import ScheduledEmail

logger = logging.getLogger(__name__)

RESEND_SEND_URL = "https://api.resend.com/emails"
RESEND_MAX_ATTEMPTS = 3
RESEND_RETRY_BASE_DELAY = 0.5
RESEND_RETRY_MAX_DELAY = 4.0
RESEND_TIMEOUT_SECONDS = 20.0
RETRY_STATUSES = {429, 500, 502, 503, 504}


class EmailSendError(Exception):
    """Provider rejected the message or could not be reached."""


@dataclass(frozen=True)
class EmailSweepResult:
    sent: int
    retried: int
    failed: int


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _mask_email(email: str | None) -> str:
    if not email:
        return ""
    local, _, domain = email.partition("@")
    return f"{local[:3]}...@{domain}" if domain else f"{local[:3]}..."


def queue_email(
    db: Session,
    *,
    clinic_id: UUID,
    recipient_email: str,
    subject: str,
    body: str,
    template: str | None = None,
    scheduled_for: datetime | None = None,
    refill_id: UUID | None = None,
    ticket_id: UUID | None = None,
    commit: bool = True,
) -> ScheduledEmail:
    """Queue an email for delivery at scheduled_for (default: now)."""
    email = ScheduledEmail(
        clinic_id=clinic_id,
        recipient_email=recipient_email,
        subject=subject,
        body=body,
        template=template,
        scheduled_for=scheduled_for or _now_utc(),
        refill_id=refill_id,
        ticket_id=ticket_id,
    )
    db.add(email)
    if commit:
        db.commit()
        db.refresh(email)
    return email


def cancel_pending_emails(db: Session, *, clinic_id: UUID, refill_id: UUID) -> int:
    """Cancel unsent emails tied to a refill (refill cancelled / rescheduled)."""
    rows = (
        db.query(ScheduledEmail)
        .filter(
            ScheduledEmail.clinic_id == clinic_id,
            ScheduledEmail.refill_id == refill_id,
            ScheduledEmail.status == ScheduledEmailStatus.PENDING,
        )
        .all()
    )
    for row in rows:
        row.status = ScheduledEmailStatus.CANCELLED
    return len(rows)


async def _post_with_retries(client: httpx.AsyncClient, headers: dict, payload: dict) -> httpx.Response:
    response: httpx.Response | None = None
    for attempt in range(RESEND_MAX_ATTEMPTS):
        last_attempt = attempt >= RESEND_MAX_ATTEMPTS - 1
        try:
            response = await client.post(RESEND_SEND_URL, headers=headers, json=payload)
        except httpx.RequestError:
            if last_attempt:
                raise
            logger.warning("Resend request failed, retrying (attempt %s)", attempt + 1)
        else:
            if response.status_code not in RETRY_STATUSES or last_attempt:
                return response
            logger.warning("Resend returned %s, retrying", response.status_code)

        delay = min(RESEND_RETRY_MAX_DELAY, RESEND_RETRY_BASE_DELAY * (2**attempt))
        await asyncio.sleep(delay + random.uniform(0, delay / 2))
    assert response is not None
    return response


async def send_email(email: ScheduledEmail) -> str | None:
    """
    Deliver one email. Returns the provider message id.

    If RESEND_API_KEY is not set, logs the email instead of sending.

    Raises:
        EmailSendError: on transport failure or a non-2xx response
    """
    if not settings.RESEND_API_KEY:
        logger.info("[DRY RUN] Email send skipped for scheduled_email=%s", email.id)
        return None

    headers = {
        "Authorization": f"Bearer {settings.RESEND_API_KEY}",
        "Content-Type": "application/json",
        # Stable across retries so the provider de-duplicates
        "Idempotency-Key": f"scheduled-email/{email.id}",
    }
    payload = {
        "from": settings.EMAIL_FROM,
        "to": [email.recipient_email],
        "subject": email.subject,
        "html": email.body,
    }

    try:
        async with httpx.AsyncClient(timeout=RESEND_TIMEOUT_SECONDS) as client:
            response = await _post_with_retries(client, headers, payload)
    except httpx.HTTPError as exc:
        raise EmailSendError(f"Connection error: {exc.__class__.__name__}") from exc

    # 409 = idempotency conflict, already sent
    if 200 <= response.status_code < 300 or response.status_code == 409:
        try:
            data = response.json()
        except ValueError:
            data = {}
        return data.get("id") if isinstance(data, dict) else None

    raise EmailSendError(f"Resend API error: {response.status_code}")


async def process_due_emails(db: Session, *, limit: int = 50) -> EmailSweepResult:
    """
    Send every PENDING email whose scheduled_for has passed.

    A failed send increments retry_count and stays PENDING until
    retry_count reaches max_retries, then the email is FAILED.
    """
    now = _now_utc()
    due = (
        db.query(ScheduledEmail)
        .filter(
            ScheduledEmail.status == ScheduledEmailStatus.PENDING,
            ScheduledEmail.scheduled_for <= now,
        )
        .order_by(ScheduledEmail.scheduled_for)
        .limit(limit)
        .all()
    )

    sent = retried = failed = 0
    for email in due:
        try:
            message_id = await send_email(email)
        except EmailSendError as exc:
            email.retry_count += 1
            email.last_error = str(exc)
            if email.retry_count >= email.max_retries:
                email.status = ScheduledEmailStatus.FAILED
                failed += 1
                logger.error(
                    "Scheduled email %s failed permanently to %s",
                    email.id,
                    _mask_email(email.recipient_email),
                )
            else:
                retried += 1
            db.commit()
            continue

        email.status = ScheduledEmailStatus.SENT
        email.sent_at = _now_utc()
        email.external_message_id = message_id
        email.last_error = None
        sent += 1
        db.commit()

    return EmailSweepResult(sent=sent, retried=retried, failed=failed)
