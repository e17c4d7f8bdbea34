import logging
from dataclasses import dataclass
from typing import Iterator, Optional

from proxy_pipeline.common.errors import ProxyNotFound, StorageError, ValidationError
from proxy_pipeline.common.qualities import PROFILES, fallback_candidates, is_known
from proxy_pipeline.common.storage import ObjectStore, ObjectStream, proxy_key

from .background import CeleryDispatcher
from .job_store import JobStore

logger = logging.getLogger(__name__)


@dataclass
class ResolvedProxy:
    stream: ObjectStream
    actual_quality: str
    requested_quality: str
    job_id: str
    size_bytes: int

    @property
    def fallback(self) -> bool:
        return self.actual_quality != self.requested_quality

    def chunks(self) -> Iterator[bytes]:
        return self.stream.iter_chunks()


class ProxyResolver:
    """Serves proxy renditions, falling back to lower tiers and queueing backfills."""

    def __init__(self, store: JobStore, objects: ObjectStore, dispatcher: CeleryDispatcher):
        self.store = store
        self.objects = objects
        self.dispatcher = dispatcher

    def resolve(self, file_id: str, quality: str) -> ResolvedProxy:
        if not is_known(quality):
            raise ValidationError(
                "Invalid quality", f"Unsupported quality profile: {quality}", valid_qualities=list(PROFILES)
            )

        job_id = self.store.find_job_id_for_file(file_id)
        if not job_id:
            logger.info("No job ID found for file %s", file_id)
            raise ProxyNotFound(ProxyNotFound.JOB_NOT_FOUND, file_id)

        obj = self._fetch(job_id, quality)
        if obj is not None:
            self.dispatcher.refresh_access(job_id, quality)
            return ResolvedProxy(obj, quality, quality, job_id, obj.info.size)

        logger.info("Quality %s not found for %s, looking for alternatives", quality, job_id)
        for candidate in fallback_candidates(quality):
            obj = self._fetch(job_id, candidate)
            if obj is not None:
                logger.info("Serving %s for %s request on %s", candidate, quality, job_id)
                self.dispatcher.refresh_access(job_id, candidate)
                self.dispatcher.request_upgrade(job_id, file_id, quality)
                return ResolvedProxy(obj, candidate, quality, job_id, obj.info.size)

        if self._has_any(job_id):
            self.dispatcher.request_upgrade(job_id, file_id, quality)
            raise ProxyNotFound(ProxyNotFound.QUALITY_UNAVAILABLE, file_id)
        raise ProxyNotFound(ProxyNotFound.NO_RENDITIONS, file_id)

    def _fetch(self, job_id: str, quality: str) -> Optional[ObjectStream]:
        try:
            return self.objects.open_proxy(job_id, quality)
        except StorageError as e:
            logger.error("Error fetching %s: %s", proxy_key(job_id, quality), e)
            return None

    def _has_any(self, job_id: str) -> bool:
        try:
            for _ in self.objects.list_proxy_keys(job_id):
                return True
        except StorageError as e:
            logger.error("Error listing proxies for %s: %s", job_id, e)
        return False
