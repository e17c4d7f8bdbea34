import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine

from proxy_pipeline.common.cache import KeyValueCache
from proxy_pipeline.common.config import Settings
from proxy_pipeline.common.db import make_engine, make_session_factory
from proxy_pipeline.common.errors import StorageError
from proxy_pipeline.common.queue import make_celery
from proxy_pipeline.common.storage import ObjectStore
from proxy_pipeline.compute.digitalocean import DropletProvisioner
from proxy_pipeline.core.background import CeleryDispatcher
from proxy_pipeline.core.job_store import JobStore
from proxy_pipeline.core.lifecycle import JobLifecycleManager
from proxy_pipeline.core.resolver import ProxyResolver
from proxy_pipeline.core.sweeper import RetentionSweeper

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: JobStore
    objects: ObjectStore
    cache: KeyValueCache
    provisioner: DropletProvisioner
    manager: JobLifecycleManager
    resolver: ProxyResolver
    sweeper: RetentionSweeper
    engine: Optional[Engine] = None

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()


def assemble(settings, session_factory, cache, objects, provisioner, dispatcher, clock=None) -> Services:
    extra = {"clock": clock} if clock is not None else {}
    store = JobStore(settings, session_factory, cache)
    manager = JobLifecycleManager(settings, store, objects, provisioner, **extra)
    return Services(
        settings=settings,
        store=store,
        objects=objects,
        cache=cache,
        provisioner=provisioner,
        manager=manager,
        resolver=ProxyResolver(store, objects, dispatcher),
        sweeper=RetentionSweeper(settings, store, objects, provisioner, manager, **extra),
    )


def build_services(settings: Settings) -> Services:
    """Production wiring: SQL + Redis + MinIO + DigitalOcean + Celery."""
    engine = make_engine(settings.database_url)
    session_factory = make_session_factory(engine)
    objects = ObjectStore.from_settings(settings)
    try:
        objects.ensure_bucket()
    except StorageError as e:
        logger.warning("Proxy bucket check failed at startup: %s", e)
    dispatcher = CeleryDispatcher(make_celery(settings), settings.background_task_expiry_seconds)
    services = assemble(
        settings,
        session_factory,
        KeyValueCache.from_settings(settings),
        objects,
        DropletProvisioner(settings),
        dispatcher,
    )
    services.engine = engine
    return services
