"""
Unit tests for MemoryJobStore.
"""

import pytest

from pg_jobqueue import JobStatus, MemoryJobStore


@pytest.mark.unit
class TestMemoryJobStore:
    """Tests for the in-process store."""

    async def test_create_initial_state(self, store):
        job = await store.create("image-batch", {"files": ["a.jpg", "b.jpg"]})

        assert job.id
        assert job.type == "image-batch"
        assert job.status == JobStatus.PENDING
        assert job.payload == {"files": ["a.jpg", "b.jpg"]}
        assert job.result is None
        assert job.error is None
        assert job.progress == 0
        assert job.total_items == 0
        assert job.completed_items == 0
        assert job.created_at == job.updated_at

    async def test_create_defaults_payload(self, store):
        job = await store.create("export")
        assert job.payload == {}

    async def test_create_with_total_items(self, store):
        job = await store.create("image-batch", {}, total_items=12)
        assert job.total_items == 12

    async def test_ids_are_unique(self, store):
        ids = {(await store.create("export")).id for _ in range(20)}
        assert len(ids) == 20

    async def test_get_unknown(self, store):
        assert await store.get("does-not-exist") is None

    async def test_get_returns_copy(self, store):
        """Mutating a returned job does not change what is stored."""
        job = await store.create("export", {"a": 1})
        job.payload["a"] = 2
        job.status = JobStatus.FAILED

        stored = await store.get(job.id)
        assert stored.payload == {"a": 1}
        assert stored.status == JobStatus.PENDING

    async def test_payload_is_copied_on_create(self, store):
        payload = {"files": ["a.jpg"]}
        job = await store.create("image-batch", payload)
        payload["files"].append("b.jpg")

        assert (await store.get(job.id)).payload == {"files": ["a.jpg"]}

    async def test_list_newest_first(self, store):
        a = await store.create("export")
        b = await store.create("export")
        c = await store.create("export")

        jobs = await store.list()

        assert [j.id for j in jobs] == [c.id, b.id, a.id]

    async def test_list_filters(self, store):
        a = await store.create("export")
        b = await store.create("image-batch")
        c = await store.create("export")
        await store.update(c.id, status=JobStatus.RUNNING)

        assert [j.id for j in await store.list(status=JobStatus.PENDING)] == [b.id, a.id]
        assert [j.id for j in await store.list(job_type="export")] == [c.id, a.id]
        assert [j.id for j in await store.list(status=JobStatus.PENDING, job_type="export")] == [a.id]
        assert await store.list(status=JobStatus.FAILED) == []

    async def test_list_accepts_status_string(self, store):
        job = await store.create("export")
        assert [j.id for j in await store.list(status="pending")] == [job.id]

    async def test_list_limit(self, store):
        for _ in range(5):
            await store.create("export")

        assert len(await store.list(limit=2)) == 2
        assert len(await store.list(limit=10)) == 5

    async def test_update_merges_fields(self, store):
        job = await store.create("image-batch", {"files": ["a.jpg"]}, total_items=1)

        updated = await store.update(job.id, progress=50, completed_items=1)

        assert updated.progress == 50.0
        assert updated.completed_items == 1
        assert updated.status == JobStatus.PENDING
        assert updated.payload == {"files": ["a.jpg"]}
        assert updated.total_items == 1
        assert updated.updated_at >= updated.created_at

    async def test_update_refreshes_updated_at(self, store):
        job = await store.create("export")
        updated = await store.update(job.id, status=JobStatus.RUNNING)
        assert updated.updated_at >= job.updated_at

    async def test_update_unknown_job(self, store):
        assert await store.update("missing", status=JobStatus.RUNNING) is None

    async def test_update_rejects_fixed_fields(self, store):
        job = await store.create("export")

        with pytest.raises(ValueError, match="Cannot update job field"):
            await store.update(job.id, type="other")
        with pytest.raises(ValueError):
            await store.update(job.id, payload={})

    async def test_update_rejects_invalid_status(self, store):
        job = await store.create("export")
        with pytest.raises(ValueError):
            await store.update(job.id, status="paused")

    async def test_update_can_clear_result_and_error(self, store):
        job = await store.create("export")
        await store.update(job.id, status=JobStatus.FAILED, error="boom")

        updated = await store.update(job.id, error=None, result=None)

        assert updated.error is None
        assert updated.result is None

    async def test_transition_when_status_matches(self, store):
        job = await store.create("export")

        running = await store.transition(job.id, [JobStatus.PENDING], status=JobStatus.RUNNING)

        assert running.status == JobStatus.RUNNING
        assert (await store.get(job.id)).status == JobStatus.RUNNING

    async def test_transition_when_status_differs(self, store):
        job = await store.create("export")
        await store.update(job.id, status=JobStatus.CANCELLED)

        assert await store.transition(job.id, [JobStatus.PENDING], status=JobStatus.RUNNING) is None
        assert (await store.get(job.id)).status == JobStatus.CANCELLED

    async def test_transition_accepts_several_statuses(self, store):
        job = await store.create("export")
        await store.update(job.id, status=JobStatus.RUNNING)

        cancelled = await store.transition(job.id, ["pending", "running"], status="cancelled")

        assert cancelled.status == JobStatus.CANCELLED

    async def test_transition_unknown_job(self, store):
        assert await store.transition("missing", [JobStatus.PENDING], status=JobStatus.RUNNING) is None

    async def test_next_pending_is_oldest(self, store):
        a = await store.create("export")
        b = await store.create("export")
        await store.create("export")

        assert (await store.next_pending()).id == a.id

        await store.update(a.id, status=JobStatus.CANCELLED)
        assert (await store.next_pending()).id == b.id

    async def test_next_pending_empty(self, store):
        assert await store.next_pending() is None

        job = await store.create("export")
        await store.update(job.id, status=JobStatus.RUNNING)
        assert await store.next_pending() is None

    async def test_fifo_with_identical_timestamps(self, store, monkeypatch):
        """Creation order breaks ties between jobs with the same timestamp."""
        fixed = (await store.create("warmup")).created_at
        await store.update((await store.next_pending()).id, status=JobStatus.COMPLETED)
        monkeypatch.setattr("pg_jobqueue.memory_store.utc_now", lambda: fixed)

        first = await store.create("export")
        second = await store.create("export")

        assert (await store.next_pending()).id == first.id
        assert [j.id for j in await store.list(job_type="export")] == [second.id, first.id]

    async def test_fail_interrupted(self, store):
        running = await store.create("export")
        pending = await store.create("export")
        await store.update(running.id, status=JobStatus.RUNNING)

        recovered = await store.fail_interrupted("interrupted")

        assert recovered == [running.id]
        failed = await store.get(running.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error == "interrupted"
        assert (await store.get(pending.id)).status == JobStatus.PENDING

    async def test_count_by_status(self, store):
        a = await store.create("export")
        await store.create("export")
        await store.update(a.id, status=JobStatus.COMPLETED)

        assert await store.count_by_status() == {"pending": 1, "completed": 1}

    async def test_initialize_db_is_noop(self):
        store = MemoryJobStore()
        await store.initialize_db()
        assert await store.list() == []
