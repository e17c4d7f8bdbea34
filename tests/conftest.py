import io
from datetime import datetime, timedelta, timezone

import pytest
from botocore.response import StreamingBody
from fastapi.testclient import TestClient

from proxy_pipeline.api.app import create_app
from proxy_pipeline.common.config import Settings
from proxy_pipeline.common.db import make_engine, make_session_factory
from proxy_pipeline.common.errors import ComputeError, ProvisioningError, StorageError
from proxy_pipeline.common.schemas import ComputeInstance, Job
from proxy_pipeline.common.models import JobStatus
from proxy_pipeline.common.storage import PROXY_CONTENT_TYPE, ObjectInfo, ObjectStore, ObjectStream, proxy_key
from proxy_pipeline.compute.digitalocean import BASE_TAGS
from proxy_pipeline.services import assemble

API_SECRET = "test-secret"
T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeCache:
    """KeyValueCache stand-in; TTLs are recorded but never expire."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    def get(self, key):
        return self.data.get(key)

    def put(self, key, value, ttl_seconds):
        self.data[key] = value
        self.ttls[key] = ttl_seconds
        return True

    def put_if_absent(self, key, value, ttl_seconds):
        if key in self.data:
            return False
        return self.put(key, value, ttl_seconds)

    def delete(self, key):
        self.data.pop(key, None)

    def ping(self):
        pass


class FakeObjectStore(ObjectStore):
    """ObjectStore over a dict. Only the primitives are replaced; proxy helpers are inherited."""

    def __init__(self):
        super().__init__(client=None, bucket="proxies")
        self.objects = {}
        self.broken = set()
        self.undeletable = set()

    def ensure_bucket(self):
        pass

    def put(self, key, data, metadata=None, content_type=PROXY_CONTENT_TYPE):
        self.objects[key] = (data, dict(metadata or {}))

    def head(self, key):
        if key in self.broken:
            raise StorageError(f"head {key} failed: connection reset")
        if key not in self.objects:
            return None
        data, meta = self.objects[key]
        return ObjectInfo(key=key, size=len(data), metadata=dict(meta), content_type=PROXY_CONTENT_TYPE)

    def open(self, key):
        info = self.head(key)
        if info is None:
            return None
        data = self.objects[key][0]
        return ObjectStream(info=info, body=StreamingBody(io.BytesIO(data), len(data)))

    def delete(self, key):
        if key in self.undeletable:
            raise StorageError(f"delete {key} failed: access denied")
        self.objects.pop(key, None)

    def list_keys(self, prefix, limit=None):
        keys = sorted(k for k in self.objects if k.startswith(prefix))
        return iter(keys if limit is None else keys[:limit])

    def replace_metadata(self, key, metadata):
        if self.head(key) is None:
            raise StorageError(f"replace metadata on missing object {key}")
        self.objects[key][1].update(metadata)

    def check(self):
        pass

    def add_proxy(self, job_id, quality, data=None, metadata=None):
        key = proxy_key(job_id, quality)
        self.put(key, data if data is not None else f"{job_id}/{quality}".encode(), metadata)
        return key

    def metadata(self, key):
        return self.objects[key][1]


class FakeProvisioner:
    def __init__(self, clock):
        self.clock = clock
        self.instances = {}
        self.payloads = {}
        self.deleted = []
        self.provision_error = None
        self.list_error = None
        self.undeletable = set()
        self.on_provision = None
        self._seq = 1000

    def provision(self, job_id, file_id, payload):
        if self.provision_error:
            raise ProvisioningError(self.provision_error)
        self.payloads[job_id] = payload
        if self.on_provision is not None:
            self.on_provision(job_id)
        return self.add_instance(job_id, file_id, self.clock())

    def add_instance(self, job_id, file_id, created_at):
        self._seq += 1
        instance = ComputeInstance(
            instance_id=str(self._seq),
            name=f"transcode-{file_id[:8]}",
            job_id=job_id,
            file_id=file_id,
            created_at=created_at,
            tags=BASE_TAGS + [f"job:{job_id}", f"file:{file_id}"],
        )
        self.instances[instance.instance_id] = instance
        return instance

    def deprovision(self, instance_id):
        if instance_id in self.undeletable:
            raise ComputeError(f"Failed to delete droplet {instance_id} (500): internal error")
        self.deleted.append(instance_id)
        self.instances.pop(instance_id, None)

    def list_instances(self, tag="fast-transcoder"):
        if self.list_error:
            raise ComputeError(self.list_error)
        return [i for i in self.instances.values() if tag in i.tags]

    def check(self):
        pass


class RecordingDispatcher:
    def __init__(self):
        self.refreshes = []
        self.upgrades = []

    def refresh_access(self, job_id, quality):
        self.refreshes.append((job_id, quality))

    def request_upgrade(self, job_id, file_id, quality):
        self.upgrades.append((job_id, file_id, quality))


def make_settings(**overrides):
    values = dict(
        database_url="sqlite://",
        api_secret=API_SECRET,
        api_base_url="https://transcode.example.com",
        public_s3_endpoint="https://s3.example.com",
        do_api_token="do-token",
        do_ssh_key_ids=["12345"],
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def cache():
    return FakeCache()


@pytest.fixture
def objects():
    return FakeObjectStore()


@pytest.fixture
def provisioner(clock):
    return FakeProvisioner(clock)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def session_factory(settings):
    engine = make_engine(settings.database_url)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def services(settings, session_factory, cache, objects, provisioner, dispatcher, clock):
    return assemble(settings, session_factory, cache, objects, provisioner, dispatcher, clock=clock)


@pytest.fixture
def manager(services):
    return services.manager


@pytest.fixture
def store(services):
    return services.store


@pytest.fixture
def client(services):
    return TestClient(create_app(services=services))


@pytest.fixture
def auth():
    return {"Authorization": f"Bearer {API_SECRET}"}


@pytest.fixture
def completed_job(store, objects, clock):
    """A finished job for file f1 with its renditions in the bucket."""

    def make(qualities=("360p", "720p"), file_id="f1", job_id="transcode-done", with_objects=True):
        job = Job(
            job_id=job_id,
            file_id=file_id,
            source_url="https://cdn.example.com/a.mp4",
            requested_qualities=list(qualities),
            completed_qualities=list(qualities),
            status=JobStatus.completed,
            created_at=clock(),
            updated_at=clock(),
            completed_at=clock(),
        )
        store.put(job)
        store.set_file_job(file_id, job_id)
        if with_objects:
            for q in qualities:
                objects.add_proxy(job_id, q)
        return job

    return make
