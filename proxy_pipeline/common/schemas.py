from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import JobStatus
from .qualities import QualityTier

TERMINAL = (JobStatus.completed, JobStatus.failed)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Camel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Job(_Camel):
    job_id: str
    file_id: str
    source_url: str
    requested_qualities: List[str]
    completed_qualities: List[str] = Field(default_factory=list)
    status: JobStatus = JobStatus.initializing
    compute_instance_id: Optional[str] = None
    webhook_url: Optional[str] = None
    is_upgrade: bool = False
    original_job_id: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    version: int = 0

    @property
    def proxy_job_id(self) -> str:
        """Job whose proxies/ prefix holds this job's renditions."""
        if self.is_upgrade and self.original_job_id:
            return self.original_job_id
        return self.job_id

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    @property
    def progress(self) -> int:
        if self.status == JobStatus.completed:
            return 100
        if not self.requested_qualities:
            return 0
        done = len(set(self.completed_qualities) & set(self.requested_qualities))
        return round(100 * done / len(self.requested_qualities))

    def touch(self, now: datetime) -> None:
        self.updated_at = now

    def add_completed(self, qualities) -> bool:
        """Union qualities into completed_qualities, keeping request order. Returns True on change."""
        merged = set(self.completed_qualities) | (set(qualities) & set(self.requested_qualities))
        ordered = [q for q in self.requested_qualities if q in merged]
        if ordered == self.completed_qualities:
            return False
        self.completed_qualities = ordered
        return True

    def absorb_backfill(self, qualities) -> bool:
        """Record tiers produced by an upgrade job as both requested and completed."""
        new = [q for q in qualities if q not in self.requested_qualities]
        self.requested_qualities = list(self.requested_qualities) + new
        return self.add_completed(qualities) or bool(new)


class JobView(_Camel):
    job_id: str
    file_id: str
    status: JobStatus
    progress: int
    requested_qualities: List[str]
    completed_qualities: List[str]
    error: Optional[str] = None
    is_upgrade: bool = False
    original_job_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    @classmethod
    def of(cls, job: Job) -> "JobView":
        return cls(
            job_id=job.job_id,
            file_id=job.file_id,
            status=job.status,
            progress=job.progress,
            requested_qualities=job.requested_qualities,
            completed_qualities=job.completed_qualities,
            error=job.error,
            is_upgrade=job.is_upgrade,
            original_job_id=job.original_job_id,
            created_at=job.created_at,
            updated_at=job.updated_at,
            completed_at=job.completed_at,
            failed_at=job.failed_at,
        )


class ProxyObject(BaseModel):
    key: str
    job_id: str
    quality: str
    quality_tier: QualityTier
    size_bytes: int = 0
    last_accessed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class ComputeInstance(BaseModel):
    instance_id: str
    name: str = ""
    job_id: Optional[str] = None
    file_id: Optional[str] = None
    created_at: Optional[datetime] = None
    tags: List[str] = Field(default_factory=list)


class SweepStats(_Camel):
    scanned: int = 0
    deleted: int = 0
    retained: int = 0
    errors: int = 0
    metadata_updated: int = 0
    instances_deleted: int = 0
    instances_kept: int = 0
    instance_errors: int = 0
    deleted_objects: List[str] = Field(default_factory=list)
    error_details: List[dict] = Field(default_factory=list)
