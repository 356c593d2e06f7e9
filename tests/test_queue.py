"""
Tests for the job store

Validates:
- Insertion order and unique ids
- Statistics
- Removal, clearing and settings updates
- Event registration and notification
- Persistence snapshot and restore
"""

import json

import pytest
from pydantic import ValidationError

from spritebatch.jobs import JobStore, JobStatus, JobSubmission
from spritebatch.storage import MemorySlot, SnapshotSlot

from .helpers import submission


class BrokenSlot(SnapshotSlot):
    async def read(self, key):
        raise OSError("disk unavailable")

    async def write(self, key, value):
        raise OSError("quota exceeded")


class TestAddJob:

    def test_jobs_keep_insertion_order_with_unique_ids(self, store):
        ids = [store.add_job(submission(f"move-{i}")) for i in range(25)]

        jobs = store.get_all()
        assert [j.id for j in jobs] == ids
        assert len(set(ids)) == 25
        assert [j.settings["motion_prompt"] for j in jobs] == [f"move-{i}" for i in range(25)]

    def test_new_job_is_pending_without_result_or_error(self, store):
        job_id = store.add_job(submission())

        job = store.get(job_id)
        assert job.status == JobStatus.PENDING
        assert job.result is None
        assert job.error is None
        assert job.added_at > 0

    def test_defaults_for_display_fields(self, store):
        job_id = store.add_job(JobSubmission(image="https://cdn.example.com/a.png"))

        job = store.get(job_id)
        assert job.image_preview == "https://cdn.example.com/a.png"
        assert job.image_name == "Untitled"
        assert job.settings == {}

    def test_settings_are_copied(self, store):
        sub = JobSubmission(image="x", settings={"motion_prompt": "jump"})
        job_id = store.add_job(sub)

        sub.settings["motion_prompt"] = "changed"

        assert store.get(job_id).settings["motion_prompt"] == "jump"

    def test_submission_without_image_never_reaches_store(self, store):
        with pytest.raises(ValidationError):
            JobSubmission(settings={"motion_prompt": "walk"})

        assert store.get_stats().total == 0


class TestQueries:

    def test_get_all_returns_copies(self, store):
        job_id = store.add_job(submission())

        snapshot = store.get_all()
        snapshot[0].status = JobStatus.DONE
        snapshot[0].settings["motion_prompt"] = "hacked"

        job = store.get(job_id)
        assert job.status == JobStatus.PENDING
        assert job.settings["motion_prompt"] == "walk"

    def test_get_unknown_job(self, store):
        assert store.get("missing") is None

    def test_stats_buckets_sum_to_total(self, store):
        ids = [store.add_job(submission(f"m{i}")) for i in range(5)]
        store.find(ids[0]).status = JobStatus.DONE
        store.find(ids[1]).status = JobStatus.ERROR
        store.find(ids[2]).status = JobStatus.PROCESSING

        stats = store.get_stats()

        assert stats.total == 5
        assert (stats.pending, stats.processing, stats.done, stats.errors) == (2, 1, 1, 1)
        assert stats.pending + stats.processing + stats.done + stats.errors == stats.total


class TestMutations:

    def test_remove_job(self, store):
        first = store.add_job(submission("a"))
        second = store.add_job(submission("b"))

        store.remove_job(first)

        assert [j.id for j in store.get_all()] == [second]

    def test_remove_unknown_job_is_noop(self, store):
        store.add_job(submission())

        store.remove_job("missing")

        assert store.get_stats().total == 1

    def test_clear_all_jobs(self, store):
        for i in range(3):
            store.add_job(submission(f"m{i}"))

        store.clear_jobs()

        assert store.get_all() == []

    def test_clear_only_completed_keeps_others_in_order(self, store):
        ids = [store.add_job(submission(f"m{i}")) for i in range(5)]
        store.find(ids[0]).status = JobStatus.DONE
        store.find(ids[1]).status = JobStatus.ERROR
        store.find(ids[3]).status = JobStatus.DONE
        store.find(ids[4]).status = JobStatus.PROCESSING

        store.clear_jobs(only_completed=True)

        remaining = store.get_all()
        assert [j.id for j in remaining] == [ids[1], ids[2], ids[4]]
        assert [j.status for j in remaining] == [
            JobStatus.ERROR,
            JobStatus.PENDING,
            JobStatus.PROCESSING,
        ]

    def test_update_job_settings_merges(self, store):
        job_id = store.add_job(submission("run", frames=16))

        store.update_job_settings(job_id, {"frames": 36, "loop": True})

        assert store.get(job_id).settings == {"motion_prompt": "run", "frames": 36, "loop": True}

    def test_update_unknown_job_is_noop(self, store):
        updates = []
        store.on("update", lambda jobs, stats: updates.append(stats))

        store.update_job_settings("missing", {"frames": 4})

        assert updates == []


class TestEvents:

    def test_update_fires_after_each_mutation(self, store):
        updates = []
        store.on("update", lambda jobs, stats: updates.append((len(jobs), stats.total)))

        job_id = store.add_job(submission())
        store.update_job_settings(job_id, {"frames": 4})
        store.remove_job(job_id)
        store.clear_jobs()

        assert updates == [(1, 1), (1, 1), (0, 0), (0, 0)]

    def test_registering_again_replaces_callback(self, store):
        first, second = [], []
        store.on("update", lambda jobs, stats: first.append(stats))
        store.on("update", lambda jobs, stats: second.append(stats))

        store.add_job(submission())

        assert first == []
        assert len(second) == 1

    def test_unknown_event_rejected(self, store):
        with pytest.raises(ValueError):
            store.on("progress", lambda: None)

    def test_failing_handler_does_not_break_mutation(self, store):
        def explode(jobs, stats):
            raise RuntimeError("render failed")

        store.on("update", explode)

        job_id = store.add_job(submission())

        assert store.get(job_id) is not None


class TestPersistence:

    async def test_every_mutation_is_persisted(self, store, slot):
        job_id = store.add_job(submission())
        await store.flush()
        assert len(json.loads(await slot.read("test_queue"))) == 1

        store.remove_job(job_id)
        await store.flush()
        assert json.loads(await slot.read("test_queue")) == []

    async def test_latest_snapshot_wins_after_burst(self, store, slot):
        for i in range(10):
            store.add_job(submission(f"m{i}"))

        await store.flush()

        assert len(json.loads(await slot.read("test_queue"))) == 10

    async def test_preview_is_truncated_in_snapshot(self, store, slot):
        data_uri = "data:image/png;base64," + "A" * 500
        job_id = store.add_job(JobSubmission(image=data_uri, settings={"motion_prompt": "idle"}))
        await store.flush()

        persisted = json.loads(await slot.read("test_queue"))[0]

        assert persisted["image_preview"] == data_uri[:20] + "..."
        assert store.get(job_id).image_preview == data_uri

    async def test_round_trip_keeps_ids_statuses_and_settings(self, store, slot):
        ids = [store.add_job(submission(f"m{i}", frames=i)) for i in range(3)]
        store.find(ids[0]).status = JobStatus.DONE
        store.find(ids[0]).result = {"spritesheet_url": "https://cdn.example.com/s.png"}
        store.find(ids[1]).status = JobStatus.ERROR
        store.find(ids[1]).error = "quota exhausted"
        store.commit()
        await store.flush()

        restored = JobStore(slot=slot, storage_key="test_queue")
        count = await restored.restore()

        assert count == 3
        original = store.get_all()
        loaded = restored.get_all()
        assert [j.id for j in loaded] == [j.id for j in original]
        assert [j.status for j in loaded] == [j.status for j in original]
        assert [j.settings for j in loaded] == [j.settings for j in original]
        assert loaded[0].result == {"spritesheet_url": "https://cdn.example.com/s.png"}
        assert loaded[1].error == "quota exhausted"

    async def test_restore_resets_interrupted_jobs(self, store, slot):
        job_id = store.add_job(submission())
        store.find(job_id).status = JobStatus.PROCESSING
        store.commit()
        await store.flush()

        restored = JobStore(slot=slot, storage_key="test_queue")
        await restored.restore()

        assert restored.get(job_id).status == JobStatus.PENDING

    async def test_restore_with_missing_snapshot_starts_empty(self):
        store = JobStore(slot=MemorySlot())

        assert await store.restore() == 0
        assert store.get_all() == []

    async def test_restore_with_corrupt_snapshot_starts_empty(self):
        slot = MemorySlot()
        await slot.write("spritebatch_queue", "{not json")
        store = JobStore(slot=slot)

        assert await store.restore() == 0
        assert store.get_all() == []

    async def test_storage_failures_are_contained(self):
        store = JobStore(slot=BrokenSlot())

        assert await store.restore() == 0
        job_id = store.add_job(submission())
        await store.flush()

        assert store.get(job_id).status == JobStatus.PENDING

    async def test_new_ids_do_not_collide_with_restored(self, store, slot):
        existing = store.add_job(submission())
        await store.flush()

        restored = JobStore(slot=slot, storage_key="test_queue")
        await restored.restore()
        new_id = restored.add_job(submission("new"))

        assert new_id != existing
        assert [j.id for j in restored.get_all()] == [existing, new_id]
