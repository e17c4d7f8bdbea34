import enum
from sqlalchemy import Column, String, DateTime, Enum, Boolean, Integer, Text
from .db import Base


class JobStatus(str, enum.Enum):
    initializing = "initializing"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class JobRecord(Base):
    __tablename__ = "transcode_jobs"
    job_id = Column(String(96), primary_key=True)
    # side-metadata used for file lookups and status scans
    file_id = Column(String(255), nullable=False, index=True)
    status = Column(Enum(JobStatus), default=JobStatus.initializing, nullable=False, index=True)
    is_upgrade = Column(Boolean, default=False, nullable=False)
    original_job_id = Column(String(96), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    # full Job document (JSON)
    document = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    # bumped on every write; writers compare-and-swap on it
    version = Column(Integer, nullable=False, default=0)
