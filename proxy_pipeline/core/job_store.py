"""
Two-tier job persistence.

- durable: SQL table `transcode_jobs`, source of truth, file_id/status as
  indexed side-metadata
- cache: Redis `job:{job_id}` (7 days) and `file:{file_id}` -> job_id (30 days)

Writes go to both; reads prefer the cache and backfill it on a durable hit.
Every write is a compare-and-swap on the record version, so a writer holding
a stale copy gets StaleJob instead of clobbering a newer state. Read-modify-
write callers go through update(), which re-reads the durable row and retries.
"""

import logging
from datetime import timezone
from typing import Callable, Optional, Tuple

from pydantic import ValidationError as SchemaError
from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from proxy_pipeline.common.cache import KeyValueCache
from proxy_pipeline.common.config import Settings
from proxy_pipeline.common.errors import JobNotFound, StaleJob
from proxy_pipeline.common.models import JobRecord, JobStatus
from proxy_pipeline.common.schemas import TERMINAL, Job

logger = logging.getLogger(__name__)

UPDATE_ATTEMPTS = 5


def _job_key(job_id: str) -> str:
    return f"job:{job_id}"


def _file_key(file_id: str) -> str:
    return f"file:{file_id}"


def _creation_key(file_id: str) -> str:
    return f"lock:create:{file_id}"


def _aware(value):
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class JobStore:
    def __init__(self, settings: Settings, session_factory: sessionmaker, cache: KeyValueCache):
        self.settings = settings
        self.session_factory = session_factory
        self.cache = cache

    # -- durable + cached records -------------------------------------------

    def put(self, job: Job) -> None:
        """Write job if the durable row is still at job.version.

        Raises StaleJob when another writer got there first, or when the write
        would move a terminal record back to a non-terminal status. On success
        job.version is the new version.
        """
        expected = job.version
        job.version = expected + 1
        document = job.model_dump_json()
        values = dict(
            file_id=job.file_id,
            status=job.status,
            is_upgrade=job.is_upgrade,
            original_job_id=job.original_job_id,
            updated_at=job.updated_at,
            document=document,
            version=job.version,
        )
        try:
            with self.session_factory() as db:
                if expected == 0:
                    db.add(JobRecord(job_id=job.job_id, created_at=job.created_at, **values))
                else:
                    stmt = update(JobRecord).where(JobRecord.job_id == job.job_id, JobRecord.version == expected)
                    if not job.is_terminal:
                        stmt = stmt.where(JobRecord.status.notin_(TERMINAL))
                    stmt = stmt.values(**values).execution_options(synchronize_session=False)
                    if db.execute(stmt).rowcount != 1:
                        db.rollback()
                        raise StaleJob(job.job_id)
                db.commit()
        except IntegrityError as e:
            job.version = expected
            raise StaleJob(job.job_id) from e
        except StaleJob:
            job.version = expected
            raise

        key = _job_key(job.job_id)
        if not self.cache.put(key, document, self.settings.job_cache_ttl_seconds):
            # an older cached copy must not outlive the durable write
            logger.warning("Job %s cached copy not refreshed; evicting it", job.job_id)
            self.cache.delete(key)

    def get(self, job_id: str) -> Job:
        job = self.find(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def find(self, job_id: str) -> Optional[Job]:
        cached = self.cache.get(_job_key(job_id))
        if cached:
            try:
                return self._normalize(Job.model_validate_json(cached))
            except SchemaError as e:
                logger.warning("Discarding malformed cached job %s: %s", job_id, e)
        return self._load(job_id)

    def load(self, job_id: str) -> Job:
        """Current durable state, bypassing the cache. Raises JobNotFound."""
        job = self._load(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def _load(self, job_id: str) -> Optional[Job]:
        with self.session_factory() as db:
            record = db.get(JobRecord, job_id)
            if record is None:
                return None
            document = record.document

        job = self._normalize(Job.model_validate_json(document))
        self.cache.put(_job_key(job_id), document, self.settings.job_cache_ttl_seconds)
        return job

    def update(self, job_id: str, apply: Callable[[Job], bool]) -> Tuple[Job, bool]:
        """Read-modify-write against the durable row.

        apply mutates the fresh job in place and returns False to leave it
        unwritten. It runs again on a fresh copy after a conflict, so it must
        not have side effects of its own. Returns (job, written).
        """
        for attempt in range(1, UPDATE_ATTEMPTS + 1):
            job = self.load(job_id)
            if not apply(job):
                return job, False
            try:
                self.put(job)
                return job, True
            except StaleJob:
                logger.info("Job %s changed concurrently (attempt %d); retrying", job_id, attempt)
        raise StaleJob(job_id)

    @staticmethod
    def _normalize(job: Job) -> Job:
        for name in ("created_at", "updated_at", "completed_at", "failed_at"):
            setattr(job, name, _aware(getattr(job, name)))
        return job

    # -- file -> job index ---------------------------------------------------

    def set_file_job(self, file_id: str, job_id: str) -> None:
        self.cache.put(_file_key(file_id), job_id, self.settings.file_index_ttl_seconds)

    def find_job_id_for_file(self, file_id: str) -> Optional[str]:
        job_id = self.cache.get(_file_key(file_id))
        if job_id:
            return job_id

        job_id = self._scan_for_file(file_id)
        if job_id:
            self.set_file_job(file_id, job_id)
        return job_id

    def _scan_for_file(self, file_id: str) -> Optional[str]:
        # completed jobs first, newest first, bounded
        completed_first = case((JobRecord.status == JobStatus.completed, 0), else_=1)
        stmt = (
            select(JobRecord.job_id)
            .where(JobRecord.file_id == file_id, JobRecord.is_upgrade.is_(False))
            .order_by(completed_first, JobRecord.created_at.desc())
            .limit(self.settings.file_scan_limit)
        )
        with self.session_factory() as db:
            return db.execute(stmt).scalars().first()

    # -- short-lived claims --------------------------------------------------

    def claim_creation(self, file_id: str, job_id: str) -> str:
        """Claim the creation slot for file_id; returns the job id that holds it."""
        if self.cache.put_if_absent(_creation_key(file_id), job_id, self.settings.creation_lock_ttl_seconds):
            return job_id
        holder = self.cache.get(_creation_key(file_id))
        return holder or job_id

    def take_creation(self, file_id: str, job_id: str) -> None:
        """Overwrite the creation slot when its holder cannot serve the request."""
        self.cache.put(_creation_key(file_id), job_id, self.settings.creation_lock_ttl_seconds)

    def release_creation(self, file_id: str, job_id: str) -> None:
        key = _creation_key(file_id)
        if self.cache.get(key) == job_id:
            self.cache.delete(key)

    def claim_upgrade(self, job_id: str, quality: str) -> bool:
        key = f"lock:upgrade:{job_id}:{quality}"
        return self.cache.put_if_absent(key, "1", self.settings.compute_soft_budget_seconds)

    def release_upgrade(self, job_id: str, quality: str) -> None:
        self.cache.delete(f"lock:upgrade:{job_id}:{quality}")

    def check(self) -> None:
        with self.session_factory() as db:
            db.execute(select(1))
