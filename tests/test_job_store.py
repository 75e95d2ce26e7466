"""Tests for the durable job queue."""

from datetime import timedelta

import pytest

from transcript_pipeline.storage.database import utcnow
from transcript_pipeline.utils.errors import InvalidStateError, NotFoundError


@pytest.fixture
async def run(run_store):
    return await run_store.create("audio-1", "google-speech-v2", {}, "h1")


class TestEnqueue:
    """Tests for JobStore.enqueue()."""

    async def test_creates_queued_job(self, job_store, run) -> None:
        job = await job_store.enqueue(run.id, "audio-1")
        assert job.status == "queued"
        assert job.attempts_made == 0
        assert job.job_type == "transcribe_long"
        assert job.next_retry_at is None

    async def test_is_idempotent_while_active(self, job_store, run) -> None:
        first = await job_store.enqueue(run.id, "audio-1")
        second = await job_store.enqueue(run.id, "audio-1")
        assert second.id == first.id
        assert len(await job_store.find_for_run(run.id)) == 1

    async def test_new_job_after_terminal(self, job_store, run) -> None:
        first = await job_store.enqueue(run.id, "audio-1")
        await job_store.claim(first.id)
        await job_store.mark_failed(first.id, "gave up")

        second = await job_store.enqueue(run.id, "audio-1")

        assert second.id != first.id
        assert [j.id for j in await job_store.find_for_run(run.id)] == [first.id, second.id]


class TestListDue:
    """Tests for JobStore.list_due()."""

    async def test_includes_jobs_without_retry_time(self, job_store, run) -> None:
        job = await job_store.enqueue(run.id, "audio-1")
        assert [j.id for j in await job_store.list_due(utcnow())] == [job.id]

    async def test_excludes_future_retries(self, job_store, run) -> None:
        job = await job_store.enqueue(run.id, "audio-1")
        await job_store.claim(job.id)
        now = utcnow()
        await job_store.schedule_retry(job.id, "busy", now + timedelta(seconds=30))

        assert await job_store.list_due(now) == []
        due = await job_store.list_due(now + timedelta(seconds=31))
        assert [j.id for j in due] == [job.id]

    async def test_excludes_processing(self, job_store, run) -> None:
        job = await job_store.enqueue(run.id, "audio-1")
        await job_store.claim(job.id)
        assert await job_store.list_due(utcnow()) == []


class TestClaim:
    """Tests for JobStore.claim()."""

    async def test_claim_counts_attempt(self, job_store, run) -> None:
        job = await job_store.enqueue(run.id, "audio-1")
        claimed = await job_store.claim(job.id)
        assert claimed.status == "processing"
        assert claimed.attempts_made == 1

    async def test_second_claim_loses(self, job_store, run) -> None:
        job = await job_store.enqueue(run.id, "audio-1")
        assert await job_store.claim(job.id) is not None
        assert await job_store.claim(job.id) is None

    async def test_claim_clears_previous_error(self, job_store, run) -> None:
        job = await job_store.enqueue(run.id, "audio-1")
        await job_store.claim(job.id)
        await job_store.schedule_retry(job.id, "busy", utcnow())

        claimed = await job_store.claim(job.id)

        assert claimed.attempts_made == 2
        assert claimed.error_message is None
        assert claimed.next_retry_at is None


class TestFinish:
    """Tests for terminal and retry outcomes."""

    async def test_mark_succeeded_records_provider_id(self, job_store, run) -> None:
        job = await job_store.enqueue(run.id, "audio-1")
        await job_store.claim(job.id)
        done = await job_store.mark_succeeded(job.id, provider_job_id="operations/op-9")
        assert done.status == "succeeded"
        assert done.provider_job_id == "operations/op-9"
        assert await job_store.find_active(run.id) is None

    async def test_schedule_retry_requeues(self, job_store, run) -> None:
        job = await job_store.enqueue(run.id, "audio-1")
        await job_store.claim(job.id)
        retry_at = utcnow() + timedelta(seconds=5)

        retried = await job_store.schedule_retry(job.id, "503 from provider", retry_at)

        assert retried.status == "queued"
        assert retried.error_message == "503 from provider"
        assert retried.next_retry_at == retry_at

    async def test_mark_failed_is_terminal(self, job_store, run) -> None:
        job = await job_store.enqueue(run.id, "audio-1")
        await job_store.claim(job.id)
        failed = await job_store.mark_failed(job.id, "gave up")
        assert failed.status == "failed"
        assert failed.next_retry_at is None
        assert failed.to_dict()["error_message"] == "gave up"

    async def test_finish_requires_processing(self, job_store, run) -> None:
        job = await job_store.enqueue(run.id, "audio-1")
        with pytest.raises(InvalidStateError) as exc_info:
            await job_store.mark_succeeded(job.id)
        assert exc_info.value.current_status == "queued"

    async def test_finish_unknown_job_is_not_found(self, job_store) -> None:
        with pytest.raises(NotFoundError, match="missing-job"):
            await job_store.mark_failed("missing-job", "gave up")
