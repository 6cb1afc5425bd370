from datetime import datetime, timedelta, timezone

import httpx
import pytest

from clinicops import worker
from clinicops.db.enums import JobStatus, JobType, ScheduledEmailStatus
from clinicops.jobs.registry import JOB_HANDLERS, resolve_job_handler
from clinicops.services import email_service, job_service


def _queue(db, clinic, **kwargs):
    return email_service.queue_email(
        db,
        clinic_id=clinic.id,
        recipient_email=kwargs.pop("recipient_email", "patient@example.com"),
        subject="Your refill is ready",
        body="<p>Hello</p>",
        **kwargs,
    )


# =============================================================================
# Registry
# =============================================================================


def test_every_job_type_has_a_handler():
    for job_type in JobType:
        assert callable(resolve_job_handler(job_type.value))
    assert set(JOB_HANDLERS) == {job_type.value for job_type in JobType}


def test_unknown_job_type_raises():
    with pytest.raises(ValueError):
        resolve_job_handler("nope")


@pytest.mark.asyncio
async def test_process_job_uses_registry(monkeypatch):
    calls: dict[str, str] = {}

    async def stub_handler(_db, job):
        calls["job_type"] = job.job_type

    def stub_resolver(job_type: str):
        calls["resolved"] = job_type
        return stub_handler

    class DummyJob:
        id = "job-1"
        job_type = JobType.SLA_SWEEP.value
        attempts = 1

    monkeypatch.setattr(worker, "resolve_job_handler", stub_resolver)
    await worker.process_job(db=None, job=DummyJob())

    assert calls == {"resolved": JobType.SLA_SWEEP.value, "job_type": JobType.SLA_SWEEP.value}


# =============================================================================
# Job service
# =============================================================================


def test_schedule_job_is_idempotent(db, test_clinic):
    first = job_service.schedule_job(
        db, test_clinic.id, JobType.REFILL_SWEEP, {}, idempotency_key="refill-sweep:2025-01-06"
    )
    second = job_service.schedule_job(
        db, test_clinic.id, JobType.REFILL_SWEEP, {}, idempotency_key="refill-sweep:2025-01-06"
    )
    assert first.id == second.id
    assert first.status == JobStatus.PENDING.value


def test_pending_jobs_exclude_future(db, test_clinic):
    due = job_service.schedule_job(db, test_clinic.id, JobType.SLA_SWEEP, {})
    job_service.schedule_job(
        db,
        test_clinic.id,
        JobType.SLA_SWEEP,
        {},
        run_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )
    assert [job.id for job in job_service.get_pending_jobs(db)] == [due.id]


def test_failed_job_retries_until_max_attempts(db, test_clinic):
    job = job_service.schedule_job(db, test_clinic.id, JobType.COMMISSION_APPROVAL, {})

    for _ in range(job.max_attempts - 1):
        job_service.mark_job_running(db, job)
        job_service.mark_job_failed(db, job, "boom")
        assert job.status == JobStatus.PENDING.value

    job_service.mark_job_running(db, job)
    job_service.mark_job_failed(db, job, "boom")
    assert job.status == JobStatus.FAILED.value
    assert job.last_error == "boom"


# =============================================================================
# Worker batches
# =============================================================================


@pytest.mark.asyncio
async def test_run_pending_jobs_completes_sweep(db, test_clinic):
    job = job_service.schedule_job(
        db, test_clinic.id, JobType.REFILL_SWEEP, {"clinic_id": str(test_clinic.id)}
    )

    processed = await worker.run_pending_jobs(db, limit=10)

    assert processed == 1
    db.refresh(job)
    assert job.status == JobStatus.COMPLETED.value
    assert job.attempts == 1
    assert job.completed_at is not None


@pytest.mark.asyncio
async def test_run_pending_jobs_records_handler_failure(db, test_clinic, monkeypatch):
    async def exploding_handler(_db, _job):
        raise RuntimeError("sweep exploded")

    monkeypatch.setattr(worker, "resolve_job_handler", lambda _type: exploding_handler)
    job = job_service.schedule_job(db, test_clinic.id, JobType.SLA_SWEEP, {})

    await worker.run_pending_jobs(db, limit=10)

    db.refresh(job)
    assert job.status == JobStatus.PENDING.value
    assert job.attempts == 1
    assert job.last_error == "sweep exploded"


@pytest.mark.asyncio
async def test_send_scheduled_emails_job_dry_run(db, test_clinic):
    email = _queue(db, test_clinic)
    job_service.schedule_job(db, test_clinic.id, JobType.SEND_SCHEDULED_EMAILS, {"limit": 10})

    await worker.run_pending_jobs(db, limit=10)

    db.refresh(email)
    assert email.status == ScheduledEmailStatus.SENT
    assert email.sent_at is not None


# =============================================================================
# Scheduled email delivery
# =============================================================================


@pytest.mark.asyncio
async def test_future_email_is_not_sent(db, test_clinic):
    email = _queue(db, test_clinic, scheduled_for=datetime.now(timezone.utc) + timedelta(days=1))

    result = await email_service.process_due_emails(db)

    assert result == email_service.EmailSweepResult(sent=0, retried=0, failed=0)
    db.refresh(email)
    assert email.status == ScheduledEmailStatus.PENDING


@pytest.mark.asyncio
async def test_email_failure_retries_then_fails(db, test_clinic, monkeypatch):
    async def failing_send(_email):
        raise email_service.EmailSendError("Resend API error: 422")

    monkeypatch.setattr(email_service, "send_email", failing_send)
    email = _queue(db, test_clinic)

    first = await email_service.process_due_emails(db)
    assert first.retried == 1
    await email_service.process_due_emails(db)
    last = await email_service.process_due_emails(db)
    assert last.failed == 1

    db.refresh(email)
    assert email.retry_count == 3
    assert email.status == ScheduledEmailStatus.FAILED
    assert email.last_error == "Resend API error: 422"

    again = await email_service.process_due_emails(db)
    assert again.failed == 0


@pytest.mark.asyncio
async def test_send_email_posts_to_resend(db, test_clinic, monkeypatch):
    seen: list[httpx.Request] = []
    responses = iter([httpx.Response(503), httpx.Response(200, json={"id": "msg_123"})])

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return next(responses)

    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        email_service.httpx,
        "AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )
    monkeypatch.setattr(email_service.settings, "RESEND_API_KEY", "re_test")
    monkeypatch.setattr(email_service, "RESEND_RETRY_BASE_DELAY", 0)
    monkeypatch.setattr(email_service, "RESEND_RETRY_MAX_DELAY", 0)
    email = _queue(db, test_clinic)

    message_id = await email_service.send_email(email)

    assert message_id == "msg_123"
    assert len(seen) == 2
    assert seen[0].headers["Authorization"] == "Bearer re_test"
    assert seen[0].headers["Idempotency-Key"] == f"scheduled-email/{email.id}"


@pytest.mark.asyncio
async def test_send_email_raises_on_client_error(db, test_clinic, monkeypatch):
    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        email_service.httpx,
        "AsyncClient",
        lambda **kwargs: real_client(
            transport=httpx.MockTransport(lambda _request: httpx.Response(422)), **kwargs
        ),
    )
    monkeypatch.setattr(email_service.settings, "RESEND_API_KEY", "re_test")
    email = _queue(db, test_clinic)

    with pytest.raises(email_service.EmailSendError):
        await email_service.send_email(email)
