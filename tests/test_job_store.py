import pytest

from proxy_pipeline.common.errors import JobNotFound, StaleJob
from proxy_pipeline.common.models import JobRecord, JobStatus
from proxy_pipeline.common.schemas import Job

from conftest import T0


def _job(job_id, file_id="f1", status=JobStatus.processing, **kwargs):
    return Job(
        job_id=job_id,
        file_id=file_id,
        source_url="https://cdn.example.com/a.mp4",
        requested_qualities=["360p"],
        status=status,
        created_at=kwargs.pop("created_at", T0),
        updated_at=T0,
        **kwargs,
    )


def test_put_writes_durable_row_and_cache(store, cache, session_factory, settings):
    store.put(_job("transcode-1"))

    with session_factory() as db:
        record = db.get(JobRecord, "transcode-1")
        assert record.file_id == "f1"
        assert record.status == JobStatus.processing
    assert "job:transcode-1" in cache.data
    assert cache.ttls["job:transcode-1"] == settings.job_cache_ttl_seconds


def test_get_falls_back_to_durable_store_and_refills_cache(store, cache):
    store.put(_job("transcode-1"))
    cache.data.clear()

    job = store.get("transcode-1")

    assert job.file_id == "f1"
    assert job.created_at == T0
    assert job.created_at.tzinfo is not None
    assert "job:transcode-1" in cache.data


def test_malformed_cache_entry_is_ignored(store, cache):
    store.put(_job("transcode-1"))
    cache.data["job:transcode-1"] = "{not json"

    assert store.get("transcode-1").job_id == "transcode-1"


def test_get_unknown_job_raises(store):
    with pytest.raises(JobNotFound):
        store.get("transcode-missing")
    assert store.find("transcode-missing") is None


def test_update_overwrites_single_row(store, session_factory):
    job = _job("transcode-1")
    store.put(job)
    job.status = JobStatus.completed
    store.put(job)

    with session_factory() as db:
        assert db.query(JobRecord).count() == 1
        assert db.get(JobRecord, "transcode-1").status == JobStatus.completed


class TestConditionalWrites:
    def test_stale_copy_is_refused(self, store):
        store.put(_job("transcode-1"))
        first = store.load("transcode-1")
        second = store.load("transcode-1")

        first.error = "first writer"
        store.put(first)
        second.error = "second writer"
        with pytest.raises(StaleJob):
            store.put(second)

        assert second.version == 1
        assert store.load("transcode-1").error == "first writer"

    def test_duplicate_insert_is_refused(self, store):
        store.put(_job("transcode-1"))
        with pytest.raises(StaleJob):
            store.put(_job("transcode-1"))

    def test_terminal_record_is_not_reopened(self, store, session_factory):
        store.put(_job("transcode-1"))
        job = store.load("transcode-1")
        job.status = JobStatus.failed
        store.put(job)

        # a writer that somehow holds the current version still cannot reopen it
        job.status = JobStatus.processing
        with pytest.raises(StaleJob):
            store.put(job)

        with session_factory() as db:
            assert db.get(JobRecord, "transcode-1").status == JobStatus.failed

    def test_update_rereads_and_retries_after_conflict(self, store):
        store.put(_job("transcode-1"))
        calls = []

        def add_error(job):
            calls.append(job.version)
            if len(calls) == 1:
                # another writer lands between the read and the write
                other = store.load("transcode-1")
                other.requested_qualities = ["360p", "720p"]
                store.put(other)
            job.error = "noted"
            return True

        job, written = store.update("transcode-1", add_error)

        assert written
        assert calls == [1, 2]
        assert job.requested_qualities == ["360p", "720p"]
        assert job.error == "noted"
        assert store.get("transcode-1").version == 3

    def test_update_without_change_does_not_write(self, store):
        store.put(_job("transcode-1"))
        job, written = store.update("transcode-1", lambda j: False)
        assert not written
        assert store.load("transcode-1").version == job.version == 1

    def test_update_gives_up_after_repeated_conflicts(self, store, monkeypatch):
        store.put(_job("transcode-1"))

        def always_stale(job):
            raise StaleJob(job.job_id)

        monkeypatch.setattr(store, "put", always_stale)
        with pytest.raises(StaleJob):
            store.update("transcode-1", lambda j: True)

    def test_failed_cache_write_evicts_old_copy(self, store, cache, monkeypatch):
        store.put(_job("transcode-1"))
        job = store.get("transcode-1")
        job.status = JobStatus.completed
        monkeypatch.setattr(cache, "put", lambda key, value, ttl: False)

        store.put(job)

        assert "job:transcode-1" not in cache.data
        assert store.get("transcode-1").status == JobStatus.completed


class TestFileIndex:
    def test_cached_mapping_wins(self, store):
        store.set_file_job("f1", "transcode-1")
        assert store.find_job_id_for_file("f1") == "transcode-1"

    def test_scan_prefers_completed_over_newer_jobs(self, store, cache, clock):
        store.put(_job("transcode-old", status=JobStatus.completed, created_at=T0))
        clock.advance(hours=1)
        store.put(_job("transcode-new", status=JobStatus.failed, created_at=clock()))

        assert store.find_job_id_for_file("f1") == "transcode-old"
        assert cache.data["file:f1"] == "transcode-old"

    def test_scan_skips_upgrade_jobs(self, store):
        store.put(_job("upgrade-1", status=JobStatus.completed, is_upgrade=True, original_job_id="transcode-1"))
        assert store.find_job_id_for_file("f1") is None

    def test_unknown_file(self, store):
        assert store.find_job_id_for_file("nope") is None


class TestClaims:
    def test_creation_claim_returns_holder(self, store, settings, cache):
        assert store.claim_creation("f1", "transcode-a") == "transcode-a"
        assert store.claim_creation("f1", "transcode-b") == "transcode-a"
        assert cache.ttls["lock:create:f1"] == settings.creation_lock_ttl_seconds

    def test_upgrade_claim_is_exclusive_until_released(self, store):
        assert store.claim_upgrade("transcode-1", "1080p")
        assert not store.claim_upgrade("transcode-1", "1080p")
        assert store.claim_upgrade("transcode-1", "2160p")

        store.release_upgrade("transcode-1", "1080p")
        assert store.claim_upgrade("transcode-1", "1080p")

    def test_creation_claim_can_be_taken_over_and_released_by_holder_only(self, store, cache):
        store.claim_creation("f1", "transcode-a")
        store.take_creation("f1", "transcode-b")
        assert store.claim_creation("f1", "transcode-c") == "transcode-b"

        store.release_creation("f1", "transcode-a")
        assert cache.data["lock:create:f1"] == "transcode-b"
        store.release_creation("f1", "transcode-b")
        assert "lock:create:f1" not in cache.data
