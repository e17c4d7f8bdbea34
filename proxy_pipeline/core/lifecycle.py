"""
Transcode job lifecycle.

    initializing --provision ok--> processing --webhook completed--> completed
    initializing --provision error--> failed
    processing --webhook failed | sweeper timeout--> failed

Terminal states are final: re-delivered or late callbacks leave the record as
it is. Transitions are versioned read-modify-writes through JobStore.update.
"""

import logging
import uuid
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

from proxy_pipeline.common.config import Settings
from proxy_pipeline.common.errors import (
    ComputeError,
    JobNotFound,
    ProvisioningError,
    StaleJob,
    StorageError,
    ValidationError,
)
from proxy_pipeline.common.models import JobStatus
from proxy_pipeline.common.qualities import PROFILES, is_known
from proxy_pipeline.common.schemas import Job, utcnow
from proxy_pipeline.common.storage import ObjectStore
from proxy_pipeline.compute.bootstrap import build_bootstrap
from proxy_pipeline.compute.digitalocean import DropletProvisioner

from .job_store import JobStore

logger = logging.getLogger(__name__)

WEBHOOK_STATUSES = (JobStatus.completed.value, JobStatus.failed.value)


def new_job_id(prefix: str = "transcode") -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


def validate_source_url(source_url) -> str:
    if not source_url or not isinstance(source_url, str):
        raise ValidationError("Missing required parameter", "sourceUrl is required")
    try:
        parsed = urlparse(source_url)
    except ValueError:
        raise ValidationError("Invalid sourceUrl", "Source URL is not a valid URL")
    if parsed.scheme not in ("http", "https"):
        raise ValidationError("Invalid sourceUrl", "Source URL must use http or https protocol")
    if not parsed.netloc:
        raise ValidationError("Invalid sourceUrl", "Source URL is not a valid URL")
    return source_url


def validate_qualities(qualities) -> List[str]:
    if not isinstance(qualities, list) or not qualities or not all(isinstance(q, str) for q in qualities):
        raise ValidationError("Invalid qualities", "qualities must be an array of quality identifiers")
    invalid = [q for q in qualities if not is_known(q)]
    if invalid:
        raise ValidationError(
            "Invalid qualities",
            f"Unsupported quality profiles: {', '.join(invalid)}",
            valid_qualities=list(PROFILES),
        )
    seen = set()
    deduped = []
    for q in qualities:
        if q not in seen:
            seen.add(q)
            deduped.append(q)
    return deduped


class JobLifecycleManager:
    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        objects: ObjectStore,
        provisioner: DropletProvisioner,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.store = store
        self.objects = objects
        self.provisioner = provisioner
        self.clock = clock

    # -- creation ------------------------------------------------------------

    def create_job(self, file_id: str, source_url: str, qualities: Optional[list] = None,
                   webhook_url: Optional[str] = None) -> Job:
        """Persist a job and try to launch its instance.

        Returns the job whatever the provisioning outcome; a provider error is
        recorded on the job as status=failed.
        """
        if not file_id or not isinstance(file_id, str):
            raise ValidationError("Missing required parameter", "fileId is required")
        validate_source_url(source_url)
        requested = validate_qualities(self.settings.default_qualities if qualities is None else qualities)
        if webhook_url is not None:
            parsed = urlparse(webhook_url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise ValidationError("Invalid webhookUrl", "webhookUrl must be an http or https URL")

        job_id = new_job_id()
        holder = self.store.claim_creation(file_id, job_id)
        if holder != job_id:
            existing = self.store.find(holder)
            covered = existing is not None and set(requested) <= set(existing.requested_qualities)
            if covered and not existing.is_terminal:
                logger.info("Job %s already being created for file %s; reusing it", holder, file_id)
                return existing
            # holder is terminal or does not cover this request
            self.store.take_creation(file_id, job_id)

        now = self.clock()
        job = Job(
            job_id=job_id,
            file_id=file_id,
            source_url=source_url,
            requested_qualities=requested,
            webhook_url=webhook_url,
            created_at=now,
            updated_at=now,
        )
        self.store.put(job)
        logger.info("Starting transcoding job %s for file %s, qualities: %s", job_id, file_id, ", ".join(requested))
        return self._launch(job)

    def create_upgrade_job(self, original_job_id: str, quality: str) -> Optional[Job]:
        """Backfill one missing quality for an already processed file.

        Skipped (returns None) unless the original job completed, the rendition
        is really missing and no other upgrade for it is in flight.
        """
        if not is_known(quality):
            logger.warning("Not starting upgrade for unknown quality %s", quality)
            return None
        original = self.store.find(original_job_id)
        if original is None:
            logger.warning("Not starting upgrade: original job %s not found", original_job_id)
            return None
        if original.status != JobStatus.completed:
            logger.info("Not starting upgrade job for %s: job %s status=%s",
                        quality, original_job_id, original.status.value)
            return None
        try:
            if self.objects.proxy_exists(original.job_id, quality):
                logger.info("Not starting upgrade job for %s: %s already has it", quality, original_job_id)
                return None
        except StorageError as e:
            logger.warning("Not starting upgrade job for %s on %s: %s", quality, original_job_id, e)
            return None
        if not self.store.claim_upgrade(original.job_id, quality):
            logger.info("Upgrade of %s to %s already in flight", original_job_id, quality)
            return None

        now = self.clock()
        job = Job(
            job_id=new_job_id("upgrade"),
            file_id=original.file_id,
            source_url=original.source_url,
            requested_qualities=[quality],
            is_upgrade=True,
            original_job_id=original.job_id,
            created_at=now,
            updated_at=now,
        )
        self.store.put(job)
        logger.info("Fetching higher quality %s for job %s via %s", quality, original.job_id, job.job_id)
        return self._launch(job)

    def _launch(self, job: Job) -> Job:
        payload = build_bootstrap(
            self.settings,
            job_id=job.job_id,
            proxy_job_id=job.proxy_job_id,
            source_url=job.source_url,
            qualities=job.requested_qualities,
            webhook_url=job.webhook_url,
        )
        try:
            instance = self.provisioner.provision(job.job_id, job.file_id, payload)
        except ProvisioningError as e:
            logger.error("Provisioning failed for job %s: %s", job.job_id, e)
            job, _ = self._fail(job.job_id, str(e))
            return job

        def start(current: Job) -> bool:
            current.status = JobStatus.processing
            current.compute_instance_id = instance.instance_id
            current.touch(self.clock())
            return True

        current, started = self._transition(job.job_id, start)
        if not started:
            # callback beat us to it
            logger.warning("Job %s already %s after provisioning; releasing instance %s",
                           job.job_id, current.status.value, instance.instance_id)
            self._release_instance(instance.instance_id, job.job_id)
        return current

    # -- status --------------------------------------------------------------

    def get_status(self, job_id: str) -> Job:
        job = self.store.get(job_id)
        if job.status != JobStatus.processing:
            return job

        try:
            present = [q for q in job.requested_qualities if self.objects.proxy_exists(job.proxy_job_id, q)]
        except StorageError as e:
            logger.warning("Error checking proxy existence for %s: %s", job_id, e)
            return job

        if len(present) == len(job.requested_qualities):
            logger.info("All proxies for %s present before callback; completing", job_id)
            return self._complete(job_id, present)
        if set(present) <= set(job.completed_qualities):
            return job

        def record(current: Job) -> bool:
            if current.status != JobStatus.processing or not current.add_completed(present):
                return False
            current.touch(self.clock())
            return True

        job, _ = self._transition(job_id, record)
        return job

    # -- callbacks -----------------------------------------------------------

    def handle_webhook(self, job_id: str, status: str, qualities: Optional[Iterable[str]] = None,
                       error: Optional[str] = None) -> Job:
        if status not in WEBHOOK_STATUSES:
            raise ValidationError("Invalid status", f"status must be one of: {', '.join(WEBHOOK_STATUSES)}")
        job = self.store.get(job_id)
        qualities = list(qualities or [])
        logger.info("Webhook received for job %s, status: %s, qualities: %s", job_id, status, ", ".join(qualities))

        if job.is_terminal:
            if job.status.value != status:
                logger.warning("Ignoring %s webhook for job %s already %s", status, job_id, job.status.value)
            return job

        if status == JobStatus.completed.value:
            return self._complete(job_id, qualities)
        job, _ = self._fail(job_id, error or "Unknown error", produced=qualities)
        return job

    def fail_job(self, job_id: str, reason: str) -> bool:
        """Mark a non-terminal job failed without touching its instance. Returns True on transition."""
        try:
            _, failed = self._fail(job_id, reason, release=False)
        except JobNotFound:
            return False
        return failed

    def _complete(self, job_id: str, qualities: Iterable[str]) -> Job:
        """Complete the job, or fail it when the callback is missing renditions.

        An empty qualities list means every requested quality.
        """
        qualities = list(qualities)

        def finish(job: Job) -> bool:
            wanted = set(qualities or job.requested_qualities)
            produced = [q for q in job.requested_qualities if q in wanted]
            missing = [q for q in job.requested_qualities if q not in wanted]
            if missing and not job.is_upgrade:
                self._mark_failed(job, f"Incomplete transcode; missing qualities: {', '.join(missing)}", produced)
            elif not produced:
                self._mark_failed(job, "Upgrade produced no renditions")
            else:
                now = self.clock()
                job.add_completed(produced)
                job.status = JobStatus.completed
                job.completed_at = now
                job.compute_instance_id = None
                job.touch(now)
            return True

        job, _ = self._transition(job_id, finish)
        return job

    def _fail(self, job_id: str, reason: str, produced: Iterable[str] = (),
              release: bool = True) -> Tuple[Job, bool]:
        produced = list(produced)

        def fail(job: Job) -> bool:
            self._mark_failed(job, reason, produced)
            return True

        return self._transition(job_id, fail, release)

    def _mark_failed(self, job: Job, reason: str, produced: Iterable[str] = ()) -> None:
        now = self.clock()
        job.add_completed(produced)
        job.status = JobStatus.failed
        job.error = reason
        job.failed_at = now
        job.compute_instance_id = None
        job.touch(now)

    # -- transitions ---------------------------------------------------------

    def _transition(self, job_id: str, decide: Callable[[Job], bool],
                    release: bool = True) -> Tuple[Job, bool]:
        """Apply decide to the current durable job unless it is terminal.

        decide may run more than once when writers race; only the write that
        lands settles the job (merge, file index, claims, instance).
        """
        instance_id = None

        def apply(job: Job) -> bool:
            nonlocal instance_id
            if job.is_terminal:
                return False
            instance_id = job.compute_instance_id
            return decide(job)

        job, written = self.store.update(job_id, apply)
        if written and job.is_terminal:
            self._settle(job, instance_id, release)
        return job, written

    def _settle(self, job: Job, instance_id: Optional[str], release: bool) -> None:
        if job.status == JobStatus.completed:
            if job.is_upgrade and job.original_job_id:
                self._merge_into_original(job)
                self.store.set_file_job(job.file_id, job.original_job_id)
            else:
                self.store.set_file_job(job.file_id, job.job_id)
        else:
            logger.warning("Job %s failed: %s", job.job_id, job.error)
            if job.is_upgrade and job.original_job_id:
                for q in job.requested_qualities:
                    self.store.release_upgrade(job.original_job_id, q)
            else:
                self.store.release_creation(job.file_id, job.job_id)
        if release:
            self._release_instance(instance_id, job.job_id)

    def _merge_into_original(self, job: Job) -> None:
        produced = job.completed_qualities

        def absorb(original: Job) -> bool:
            if not original.absorb_backfill(produced):
                return False
            original.touch(self.clock())
            return True

        logger.info("Updating original job %s with new quality %s", job.original_job_id, ", ".join(produced))
        try:
            self.store.update(job.original_job_id, absorb)
        except JobNotFound:
            logger.error("Original job %s of upgrade %s not found", job.original_job_id, job.job_id)
        except StaleJob:
            logger.error("Original job %s kept changing; upgrade %s not merged", job.original_job_id, job.job_id)
        finally:
            for q in produced:
                self.store.release_upgrade(job.original_job_id, q)

    def _release_instance(self, instance_id: Optional[str], job_id: str) -> None:
        if not instance_id:
            return
        try:
            self.provisioner.deprovision(instance_id)
            logger.info("Deleted instance %s for job %s", instance_id, job_id)
        except ComputeError as e:
            logger.error("Error deleting instance %s for job %s: %s", instance_id, job_id, e)
