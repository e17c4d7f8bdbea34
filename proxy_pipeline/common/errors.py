from typing import List, Optional


class PipelineError(Exception):
    """Base class for errors raised by the orchestration core."""


class ValidationError(PipelineError):
    def __init__(self, error: str, message: str, valid_qualities: Optional[List[str]] = None):
        super().__init__(message)
        self.error = error
        self.message = message
        self.valid_qualities = valid_qualities


class JobNotFound(PipelineError):
    def __init__(self, job_id: str):
        super().__init__(f"No job found with ID {job_id}")
        self.job_id = job_id


class ProxyNotFound(PipelineError):
    JOB_NOT_FOUND = "job_not_found"
    NO_RENDITIONS = "no_renditions"
    QUALITY_UNAVAILABLE = "quality_unavailable"

    MESSAGES = {
        JOB_NOT_FOUND: "No transcoding job found for this file ID",
        NO_RENDITIONS: "No transcoded proxy found for this file. Transcoding may be in progress or failed.",
        QUALITY_UNAVAILABLE: "No proxy at or below the requested quality exists yet",
    }

    def __init__(self, reason: str, file_id: str):
        super().__init__(self.MESSAGES[reason])
        self.reason = reason
        self.file_id = file_id


class ProvisioningError(PipelineError):
    """The compute provider refused or could not be asked to create an instance."""


class ComputeError(PipelineError):
    """Listing or deleting compute instances failed."""


class StorageError(PipelineError):
    """Object store failure other than a missing key."""


class StaleJob(PipelineError):
    """The durable job record changed since it was read."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} was modified concurrently")
        self.job_id = job_id
