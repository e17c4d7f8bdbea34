"""
Best-effort background work.

Submissions are published to the Celery broker with a message expiry and no
result tracking. There is no delivery guarantee: a message can expire, a
worker can drop it, or the publish itself can fail (logged, never raised).
Nothing may depend on these tasks for correctness.
"""

import logging

from celery import Celery

from proxy_pipeline.common.queue import ENQUEUE_UPGRADE, REFRESH_PROXY_ACCESS

logger = logging.getLogger(__name__)


class CeleryDispatcher:
    def __init__(self, celery_app: Celery, expires_seconds: int = 300):
        self.celery_app = celery_app
        self.expires_seconds = expires_seconds

    def _send(self, name: str, args: list) -> None:
        try:
            self.celery_app.send_task(name, args=args, expires=self.expires_seconds, ignore_result=True)
        except Exception as e:
            logger.warning("Dropping background task %s%s: %s", name, tuple(args), e)

    def refresh_access(self, job_id: str, quality: str) -> None:
        self._send(REFRESH_PROXY_ACCESS, [job_id, quality])

    def request_upgrade(self, job_id: str, file_id: str, quality: str) -> None:
        self._send(ENQUEUE_UPGRADE, [job_id, file_id, quality])
