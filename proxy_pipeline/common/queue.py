from celery import Celery

from .config import Settings

REFRESH_PROXY_ACCESS = "proxy_pipeline.worker.tasks.refresh_proxy_access"
ENQUEUE_UPGRADE = "proxy_pipeline.worker.tasks.enqueue_upgrade"
RUN_RETENTION_SWEEP = "proxy_pipeline.worker.tasks.run_retention_sweep"


def make_celery(settings: Settings, name: str = "proxy_pipeline") -> Celery:
    app = Celery(name, broker=settings.redis_url, backend=settings.redis_url)
    app.conf.update(
        task_ignore_result=True,
        worker_prefetch_multiplier=1,
        task_time_limit=settings.compute_soft_budget_seconds,
        beat_schedule={
            "retention-sweep": {
                "task": RUN_RETENTION_SWEEP,
                "schedule": float(settings.sweep_interval_seconds),
                "options": {"expires": float(settings.sweep_interval_seconds)},
            },
        },
    )
    return app
