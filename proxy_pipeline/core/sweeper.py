"""
Retention sweep.

Two independent passes, both idempotent and safe to run alongside live
traffic or another sweep:

1. proxy expiry: every rendition carries an expires-at stamp derived from its
   tier and last access; expired renditions are deleted unless that would
   leave the job without any live rendition, in which case the lowest quality
   one is kept and re-stamped.
2. orphaned compute: transcode instances past the soft or absolute budget are
   reaped, failing their job first when it is still processing.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from proxy_pipeline.common.config import Settings
from proxy_pipeline.common.errors import ComputeError, PipelineError, StorageError
from proxy_pipeline.common.models import JobStatus
from proxy_pipeline.common.qualities import lowest, retention_for, tier_of
from proxy_pipeline.common.schemas import ComputeInstance, ProxyObject, SweepStats, utcnow
from proxy_pipeline.common.storage import (
    META_EXPIRES_AT,
    META_LAST_ACCESSED,
    META_QUALITY_TIER,
    ObjectStore,
    format_ts,
    parse_proxy_key,
    proxy_from_info,
    proxy_key,
)
from proxy_pipeline.compute.digitalocean import TRANSCODER_TAG, DropletProvisioner

from .job_store import JobStore
from .lifecycle import JobLifecycleManager

logger = logging.getLogger(__name__)

MAX_REPORTED_DELETES = 50
MAX_REPORTED_ERRORS = 10


def access_stamp(quality: str, accessed_at: datetime) -> Dict[str, str]:
    """Metadata recording an access at accessed_at, with the tier's retention window."""
    return {
        META_LAST_ACCESSED: format_ts(accessed_at),
        META_EXPIRES_AT: format_ts(accessed_at + retention_for(quality)),
        META_QUALITY_TIER: tier_of(quality).value,
    }


def refresh_access(objects: ObjectStore, job_id: str, quality: str, now: datetime) -> None:
    objects.replace_metadata(proxy_key(job_id, quality), access_stamp(quality, now))


class RetentionSweeper:
    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        objects: ObjectStore,
        provisioner: DropletProvisioner,
        manager: JobLifecycleManager,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.store = store
        self.objects = objects
        self.provisioner = provisioner
        self.manager = manager
        self.clock = clock

    def run(self) -> SweepStats:
        logger.info("Starting lifecycle maintenance")
        stats = SweepStats()
        self.sweep_proxies(stats)
        self.reclaim_instances(stats)
        logger.info(
            "Lifecycle maintenance done | scanned=%d deleted=%d retained=%d errors=%d "
            "instances_deleted=%d instances_kept=%d instance_errors=%d",
            stats.scanned, stats.deleted, stats.retained, stats.errors,
            stats.instances_deleted, stats.instances_kept, stats.instance_errors,
        )
        return stats

    @staticmethod
    def _error(stats: SweepStats, key: str, error: Exception) -> None:
        stats.errors += 1
        if len(stats.error_details) < MAX_REPORTED_ERRORS:
            stats.error_details.append({"key": key, "error": str(error)})

    # -- proxy expiry --------------------------------------------------------

    def sweep_proxies(self, stats: SweepStats) -> None:
        groups: Dict[str, List[str]] = defaultdict(list)
        try:
            for key in self.objects.list_proxy_keys():
                parsed = parse_proxy_key(key)
                if parsed is None:
                    stats.scanned += 1
                    stats.retained += 1
                    logger.warning("Skipping unrecognized key under proxies/: %s", key)
                    continue
                groups[parsed[0]].append(key)
        except StorageError as e:
            # partial listing: whatever was gathered is still processed
            logger.error("Listing proxies failed: %s", e)
            self._error(stats, "proxies/", e)

        for job_id, keys in groups.items():
            self._sweep_job(job_id, keys, stats)

    def _sweep_job(self, job_id: str, keys: List[str], stats: SweepStats) -> None:
        now = self.clock()
        stats.scanned += len(keys)
        proxies: List[ProxyObject] = []
        for key in keys:
            try:
                info = self.objects.head(key)
            except StorageError as e:
                # siblings unknown: keep the whole job as it is
                logger.error("Error reading %s; retaining job %s untouched: %s", key, job_id, e)
                self._error(stats, key, e)
                stats.retained += len(keys)
                return
            if info is None:
                # deleted since listing
                continue
            proxy = proxy_from_info(info)
            if proxy is not None:
                proxies.append(proxy)

        expired = [p for p in proxies if p.expires_at is not None and p.expires_at <= now]
        live = [p for p in proxies if p.expires_at is None or p.expires_at > now]

        keeper: Optional[ProxyObject] = None
        if expired and not live:
            keeper_quality = lowest(p.quality for p in expired)
            keeper = next(p for p in expired if p.quality == keeper_quality)

        for proxy in proxies:
            try:
                if proxy.expires_at is None:
                    self._stamp(proxy, proxy.last_accessed_at or now)
                    stats.metadata_updated += 1
                    stats.retained += 1
                elif proxy is keeper:
                    logger.info("Retained last remaining proxy despite expiration: %s", proxy.key)
                    self._stamp(proxy, now)
                    stats.metadata_updated += 1
                    stats.retained += 1
                elif proxy.expires_at <= now:
                    self.objects.delete(proxy.key)
                    stats.deleted += 1
                    if len(stats.deleted_objects) < MAX_REPORTED_DELETES:
                        stats.deleted_objects.append(proxy.key)
                    logger.info("Deleted expired proxy: %s", proxy.key)
                else:
                    stats.retained += 1
            except StorageError as e:
                logger.error("Error processing object %s: %s", proxy.key, e)
                self._error(stats, proxy.key, e)

    def _stamp(self, proxy: ProxyObject, accessed_at: datetime) -> None:
        self.objects.replace_metadata(proxy.key, access_stamp(proxy.quality, accessed_at))

    # -- orphaned compute ----------------------------------------------------

    def reclaim_instances(self, stats: SweepStats) -> None:
        logger.info("Checking for orphaned instances")
        try:
            instances = self.provisioner.list_instances(TRANSCODER_TAG)
        except ComputeError as e:
            logger.error("Listing transcode instances failed: %s", e)
            stats.instance_errors += 1
            self._error(stats, "instances", e)
            return

        logger.info("Found %d transcoder instances", len(instances))
        now = self.clock()
        soft = timedelta(seconds=self.settings.compute_soft_budget_seconds)
        absolute = timedelta(seconds=self.settings.compute_absolute_budget_seconds)
        for instance in instances:
            try:
                self._reclaim(instance, now, soft, absolute, stats)
            except (PipelineError, SQLAlchemyError) as e:
                logger.error("Error processing instance %s: %s", instance.instance_id, e)
                stats.instance_errors += 1
                self._error(stats, f"instance:{instance.instance_id}", e)

    def _reclaim(self, instance: ComputeInstance, now: datetime, soft: timedelta,
                 absolute: timedelta, stats: SweepStats) -> None:
        job = self.store.find(instance.job_id) if instance.job_id else None
        # droplets listed without a creation time are aged by their job
        started = instance.created_at or (job.created_at if job is not None else None)
        age = now - started if started else None
        logger.info("Inspecting instance %s (%s): age=%s job=%s file=%s",
                    instance.instance_id, instance.name,
                    f"{int(age.total_seconds() // 60)}min" if age is not None else "unknown",
                    instance.job_id, instance.file_id)

        reason = None
        if age is not None and age > absolute:
            reason = f"Transcoding exceeded maximum age of {self._hours(absolute)}"
        elif age is not None and age > soft:
            reason = f"Transcoding timed out after {self._hours(soft)}"
        elif job is not None and job.is_terminal:
            reason = "leaked"

        if reason is None:
            stats.instances_kept += 1
            return

        if job is not None and job.status == JobStatus.processing and reason != "leaked":
            self.manager.fail_job(job.job_id, reason)
        logger.info("Deleting instance %s (%s): %s", instance.instance_id, instance.name, reason)
        self.provisioner.deprovision(instance.instance_id)
        stats.instances_deleted += 1

    @staticmethod
    def _hours(delta: timedelta) -> str:
        return f"{delta.total_seconds() / 3600:g}h"
