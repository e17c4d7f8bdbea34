import logging
from contextlib import contextmanager
from typing import Iterator

from proxy_pipeline.common.config import load_settings
from proxy_pipeline.common.errors import StorageError
from proxy_pipeline.common.queue import make_celery
from proxy_pipeline.common.schemas import utcnow
from proxy_pipeline.core.sweeper import refresh_access
from proxy_pipeline.services import Services, build_services

logger = logging.getLogger(__name__)

celery_app = make_celery(load_settings(), "worker")


@contextmanager
def task_services() -> Iterator[Services]:
    """Services for one task run, wired from the environment and closed afterwards."""
    services = build_services(load_settings())
    try:
        yield services
    finally:
        services.close()


@celery_app.task(name="proxy_pipeline.worker.tasks.refresh_proxy_access")
def refresh_proxy_access(job_id: str, quality: str):
    with task_services() as services:
        try:
            refresh_access(services.objects, job_id, quality, utcnow())
        except StorageError as e:
            # the sweeper stamps anything left without an expiry
            logger.warning("Access refresh for %s/%s dropped: %s", job_id, quality, e)


@celery_app.task(name="proxy_pipeline.worker.tasks.enqueue_upgrade")
def enqueue_upgrade(job_id: str, file_id: str, quality: str):
    with task_services() as services:
        job = services.manager.create_upgrade_job(job_id, quality)
    if job is not None:
        logger.info("Upgrade %s for file %s: %s", job.job_id, file_id, job.status.value)
        return job.job_id
    return None


@celery_app.task(name="proxy_pipeline.worker.tasks.run_retention_sweep")
def run_retention_sweep():
    with task_services() as services:
        stats = services.sweeper.run()
    return stats.model_dump(by_alias=True)
