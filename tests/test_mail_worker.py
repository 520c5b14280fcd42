"""Tests for the mail worker: selection, state machine, retries and history pairing."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy import select, update

from mailqueue import repository
from mailqueue.database import as_utc, async_session
from mailqueue.handlers.mail_worker import NO_RECIPIENTS_ERROR, process_batch
from mailqueue.models.email_history import EmailHistory
from mailqueue.models.mail_job import MailJob
from mailqueue.schemas.mail import DeliveryResult
from mailqueue.templates.email_templates import render_email

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

_select_due_jobs = repository.select_due_jobs


async def _add_job(*, history: bool = True, **overrides) -> int:
    values = {
        "kind": "onboarding_notice",
        "payload": {
            "recipients": ["it@example.com", "facility@example.com"],
            "employeeName": "Jana Novakova",
            "position": "Accountant",
            "department": "Finance",
        },
        "status": "QUEUED",
        "send_at": NOW - timedelta(minutes=1),
        "priority": 5,
        "retry_count": 0,
        "max_retries": 3,
        "created_at": NOW - timedelta(hours=1),
    }
    values.update(overrides)
    async with async_session() as db:
        job = MailJob(**values)
        db.add(job)
        await db.flush()
        if history:
            db.add(EmailHistory(
                mail_queue_id=job.id,
                email_type=job.kind,
                recipients=values["payload"].get("recipients", []),
                subject="snapshot",
                status="QUEUED",
            ))
        await db.commit()
        return job.id


async def _load(job_id: int) -> tuple[MailJob, EmailHistory | None]:
    async with async_session() as db:
        job = await db.get(MailJob, job_id)
        history = await repository.get_history(db, job_id)
        return job, history


def _client(*results) -> AsyncMock:
    client = AsyncMock()
    if len(results) == 1:
        client.send.return_value = results[0]
    else:
        client.send.side_effect = list(results)
    return client


def _ok(message_id: str = "msg_1") -> DeliveryResult:
    return DeliveryResult(success=True, provider_message_id=message_id)


def _failed(error: str = "provider down") -> DeliveryResult:
    return DeliveryResult(success=False, error=error)


async def _run(client, now=NOW, limit=None):
    async with async_session() as db:
        return await process_batch(db, limit, client=client, now=now)


async def test_successful_send_marks_job_and_history_sent():
    job_id = await _add_job()
    client = _client(_ok("msg_42"))

    result = await _run(client)

    assert result.processed == 1
    assert result.succeeded == 1
    assert result.errors == []
    job, history = await _load(job_id)
    assert job.status == "SENT"
    assert job.error is None
    assert as_utc(job.sent_at) == NOW
    assert job.provider_message_id == "msg_42"
    assert history.status == "SENT"
    assert as_utc(history.sent_at) == NOW


async def test_send_is_tagged_with_kind_source_and_idempotency_key():
    job_id = await _add_job(kind="probation_warning", payload={
        "recipients": ["hr@example.com", "hr@example.com", "  "],
        "employeeName": "Petr Svoboda",
        "daysRemaining": 7,
    })
    client = _client(_ok())

    await _run(client)

    call = client.send.await_args
    recipients, subject, html, text = call.args
    assert recipients == ["hr@example.com"]
    assert "7 days" in subject
    assert "Petr Svoboda" in html
    assert text and "<" not in text
    assert call.kwargs["tags"] == {"type": "probation_warning", "source": "hr-system"}
    assert call.kwargs["idempotency_key"] == f"mail-job-{job_id}"


async def test_first_failure_reschedules_with_backoff_then_succeeds():
    """Fails once, is retried two minutes later and ends SENT with clean history."""
    job_id = await _add_job()

    first = await _run(_client(_failed("rate limited")))

    assert first.failed == 0
    assert first.errors == []
    job, history = await _load(job_id)
    assert job.status == "QUEUED"
    assert job.retry_count == 1
    assert job.error == "rate limited"
    assert as_utc(job.send_at) == NOW + timedelta(minutes=2)
    assert history.status == "QUEUED"
    assert history.error == "rate limited"

    # Not due yet one minute later.
    early_client = _client(_ok())
    early = await _run(early_client, now=NOW + timedelta(minutes=1))
    assert early.processed == 0
    early_client.send.assert_not_awaited()

    second = await _run(_client(_ok()), now=NOW + timedelta(minutes=2))

    assert second.succeeded == 1
    job, history = await _load(job_id)
    assert job.status == "SENT"
    assert job.error is None
    assert job.sent_at is not None
    assert history.status == "SENT"
    assert history.error is None


async def test_three_failures_exhaust_retries_and_job_is_never_selected_again():
    job_id = await _add_job(max_retries=3)
    now = NOW
    send_times = []

    for attempt in range(1, 4):
        result = await _run(_client(_failed("mailbox unavailable")), now=now)
        assert result.processed == 1
        job, _ = await _load(job_id)
        assert job.retry_count == attempt
        if attempt < 3:
            assert job.status == "QUEUED"
            assert result.errors == []
            send_times.append(as_utc(job.send_at))
            now = as_utc(job.send_at)
        else:
            assert job.status == "FAILED"
            assert result.failed == 1
            assert result.errors == [f"Job {job_id}: mailbox unavailable"]

    assert send_times == [NOW + timedelta(minutes=2), NOW + timedelta(minutes=6)]
    assert send_times[0] < send_times[1]

    job, history = await _load(job_id)
    assert job.retry_count == job.max_retries == 3
    assert history.status == "FAILED"

    later_client = _client(_ok())
    later = await _run(later_client, now=NOW + timedelta(days=7))
    assert later.processed == 0
    later_client.send.assert_not_awaited()


async def test_empty_recipient_list_fails_without_calling_provider():
    job_id = await _add_job(payload={"recipients": [], "employeeName": "Eva Mala"})
    client = _client(_ok())

    result = await _run(client)

    client.send.assert_not_awaited()
    assert result.succeeded == 0
    job, history = await _load(job_id)
    assert job.status == "QUEUED"
    assert job.retry_count == 1
    assert job.error == NO_RECIPIENTS_ERROR
    assert history.error == NO_RECIPIENTS_ERROR


async def test_priority_beats_creation_order():
    low = await _add_job(priority=5, created_at=NOW - timedelta(hours=3),
                         payload={"recipients": ["low@example.com"]})
    urgent = await _add_job(priority=1, created_at=NOW - timedelta(minutes=5),
                            payload={"recipients": ["urgent@example.com"]})

    async with async_session() as db:
        selected = await repository.select_due_jobs(db, 10, NOW)
    assert [job.id for job in selected] == [urgent, low]

    client = _client(_ok("a"), _ok("b"))
    await _run(client)
    sent_to = [call.args[0] for call in client.send.await_args_list]
    assert sent_to == [["urgent@example.com"], ["low@example.com"]]


async def test_selection_is_fifo_within_priority_and_respects_limit_and_send_at():
    oldest = await _add_job(created_at=NOW - timedelta(hours=5))
    middle = await _add_job(created_at=NOW - timedelta(hours=4))
    await _add_job(created_at=NOW - timedelta(hours=6), send_at=NOW + timedelta(hours=1))
    await _add_job(created_at=NOW - timedelta(hours=7), status="SENT")
    await _add_job(created_at=NOW - timedelta(hours=3))

    async with async_session() as db:
        selected = await repository.select_due_jobs(db, 2, NOW)

    assert [job.id for job in selected] == [oldest, middle]


async def test_provider_exception_is_treated_as_delivery_failure():
    job_id = await _add_job()
    client = AsyncMock()
    client.send.side_effect = httpx.ReadTimeout("timed out")

    result = await _run(client)

    assert result.errors == []
    job, _ = await _load(job_id)
    assert job.status == "QUEUED"
    assert job.retry_count == 1
    assert job.error == "timed out"


async def test_render_error_fails_job_immediately_and_batch_continues():
    broken = await _add_job(created_at=NOW - timedelta(hours=2))
    healthy = await _add_job(created_at=NOW - timedelta(hours=1))
    client = _client(_ok())

    calls = {"n": 0}

    def flaky_render(kind, payload):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("template exploded")
        return render_email(kind, payload)

    with patch("mailqueue.handlers.mail_worker.render_email", side_effect=flaky_render):
        result = await _run(client)

    assert result.processed == 2
    assert result.succeeded == 1
    assert result.failed == 1
    assert result.errors == [f"Job {broken}: template exploded"]

    job, history = await _load(broken)
    assert job.status == "FAILED"
    assert job.retry_count == job.max_retries
    assert job.error == "template exploded"
    assert history.status == "FAILED"

    job, _ = await _load(healthy)
    assert job.status == "SENT"


async def test_malformed_payload_is_an_internal_failure():
    job_id = await _add_job(kind="probation_reminder", max_retries=5, payload={
        "recipients": ["emp@example.com"],
        "daysRemaining": "soon",
    })
    client = _client(_ok())

    result = await _run(client)

    client.send.assert_not_awaited()
    assert result.failed == 1
    job, _ = await _load(job_id)
    assert job.status == "FAILED"
    assert job.retry_count == 5


async def test_store_write_failure_after_send_fails_the_job():
    job_id = await _add_job()
    client = _client(_ok())

    with patch("mailqueue.repository.mark_sent", side_effect=RuntimeError("db gone")):
        result = await _run(client)

    assert result.failed == 1
    assert result.errors == [f"Job {job_id}: db gone"]
    job, _ = await _load(job_id)
    assert job.status == "FAILED"
    assert job.retry_count == job.max_retries


async def test_job_without_history_row_is_still_processed():
    job_id = await _add_job(history=False)

    result = await _run(_client(_ok()))

    assert result.succeeded == 1
    job, history = await _load(job_id)
    assert job.status == "SENT"
    assert history is None


async def test_claim_is_conditional_on_queued_status():
    job_id = await _add_job()

    async with async_session() as db:
        assert await repository.claim_job(db, job_id) is True
        assert await repository.claim_job(db, job_id) is False

    job, history = await _load(job_id)
    assert job.status == "PROCESSING"
    assert history.status == "PROCESSING"


async def test_job_claimed_elsewhere_is_skipped():
    job_id = await _add_job()
    client = _client(_ok())

    async def claimed_elsewhere(db, limit, now):
        jobs = await _select_due_jobs(db, limit, now)
        await db.execute(update(MailJob).where(MailJob.id == job_id).values(status="PROCESSING"))
        await db.commit()
        return jobs

    with patch("mailqueue.handlers.mail_worker.repository.select_due_jobs", side_effect=claimed_elsewhere):
        result = await _run(client)

    assert result.skipped == 1
    assert result.succeeded == 0
    client.send.assert_not_awaited()


async def test_default_client_is_built_only_when_jobs_are_due():
    mock_resend = AsyncMock()
    mock_resend.send.return_value = _ok()
    mock_resend.close = AsyncMock()

    with patch("mailqueue.handlers.mail_worker.ResendClient", return_value=mock_resend) as factory:
        async with async_session() as db:
            empty = await process_batch(db, now=NOW)
        assert empty.processed == 0
        factory.assert_not_called()

        await _add_job()
        async with async_session() as db:
            result = await process_batch(db, now=NOW)

    assert result.succeeded == 1
    factory.assert_called_once()
    mock_resend.close.assert_awaited_once()


async def test_batch_read_failure_propagates():
    client = _client(_ok())

    with patch(
        "mailqueue.handlers.mail_worker.repository.select_due_jobs",
        side_effect=RuntimeError("database is locked"),
    ):
        async with async_session() as db:
            with pytest.raises(RuntimeError, match="locked"):
                await process_batch(db, client=client, now=NOW)
    client.send.assert_not_awaited()


async def test_retry_count_never_exceeds_max_retries():
    ids = [await _add_job(max_retries=n, created_at=NOW - timedelta(hours=n)) for n in (1, 2)]
    now = NOW
    for _ in range(5):
        await _run(_client(_failed()), now=now)
        now += timedelta(hours=1)

    async with async_session() as db:
        rows = (await db.execute(select(MailJob).where(MailJob.id.in_(ids)))).scalars().all()
    for job in rows:
        assert job.retry_count == job.max_retries
        assert job.status == "FAILED"


async def test_outcomes_are_stamped_when_each_attempt_finishes():
    first = await _add_job(created_at=NOW - timedelta(hours=2))
    second = await _add_job()
    clock = [NOW]
    outcomes = iter([_ok("msg_1"), _failed()])

    async def slow_send(*args, **kwargs):
        clock[0] += timedelta(seconds=15)
        return next(outcomes)

    client = AsyncMock()
    client.send.side_effect = slow_send

    with patch("mailqueue.handlers.mail_worker.utcnow", side_effect=lambda: clock[0]):
        async with async_session() as db:
            result = await process_batch(db, client=client)

    assert result.succeeded == 1
    sent, sent_history = await _load(first)
    assert as_utc(sent.sent_at) == NOW + timedelta(seconds=15)
    assert as_utc(sent_history.sent_at) == NOW + timedelta(seconds=15)
    retried, _ = await _load(second)
    assert retried.status == "QUEUED"
    assert as_utc(retried.send_at) == NOW + timedelta(seconds=30) + timedelta(minutes=2)


async def test_row_finished_elsewhere_during_send_is_not_counted():
    job_id = await _add_job()

    async def cancelled_while_sending(*args, **kwargs):
        async with async_session() as other:
            await other.execute(update(MailJob).where(MailJob.id == job_id).values(status="FAILED"))
            await other.commit()
        return _ok()

    client = AsyncMock()
    client.send.side_effect = cancelled_while_sending

    result = await _run(client)

    assert result.processed == 1
    assert result.succeeded == 0
    job, history = await _load(job_id)
    assert job.status == "FAILED"
    assert job.sent_at is None
    assert history.status == "PROCESSING"


async def test_terminal_jobs_are_never_moved():
    sent_id = await _add_job(status="SENT", sent_at=NOW)
    failed_id = await _add_job(status="FAILED", retry_count=3, error="gave up")

    async with async_session() as db:
        assert await repository.mark_internal_failure(db, sent_id, 3, "late error") is False
        assert await repository.mark_sent(db, failed_id, NOW, "msg_late") is False

    sent, _ = await _load(sent_id)
    failed, _ = await _load(failed_id)
    assert sent.status == "SENT"
    assert sent.error is None
    assert failed.status == "FAILED"
    assert failed.provider_message_id is None
