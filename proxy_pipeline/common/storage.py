import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .errors import StorageError
from .qualities import tier_of
from .schemas import ProxyObject

logger = logging.getLogger(__name__)

PROXY_PREFIX = "proxies/"
PROXY_CONTENT_TYPE = "video/mp4"
STREAM_CHUNK_SIZE = 1024 * 1024

META_LAST_ACCESSED = "last-accessed"
META_EXPIRES_AT = "expires-at"
META_QUALITY_TIER = "quality-tier"

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
_USER_META_PREFIX = "x-amz-meta-"


def get_s3(settings: Settings):
    return boto3.client(
        "s3",
        endpoint_url=settings.s3_endpoint,
        aws_access_key_id=settings.s3_access_key,
        aws_secret_access_key=settings.s3_secret_key,
        region_name=settings.s3_region,
        config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
    )


def _error_code(e: Exception) -> Optional[str]:
    if isinstance(e, ClientError):
        return str((e.response.get("Error") or {}).get("Code"))
    return None


def proxy_key(job_id: str, quality: str) -> str:
    return f"{PROXY_PREFIX}{job_id}/{quality}.mp4"


def parse_proxy_key(key: str) -> Optional[Tuple[str, str]]:
    """proxies/<job_id>/<quality>.mp4 -> (job_id, quality), None for anything else."""
    if not key.startswith(PROXY_PREFIX):
        return None
    parts = key[len(PROXY_PREFIX):].split("/")
    if len(parts) != 2 or not parts[0] or not parts[1].endswith(".mp4"):
        return None
    quality = parts[1][: -len(".mp4")]
    if not quality:
        return None
    return parts[0], quality


def format_ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Ignoring unparseable timestamp metadata %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class ObjectInfo:
    key: str
    size: int = 0
    metadata: Dict[str, str] = field(default_factory=dict)
    content_type: Optional[str] = None


@dataclass
class ObjectStream:
    """An open object body; iterate it once, it closes itself when done."""

    info: ObjectInfo
    body: object

    def iter_chunks(self, chunk_size: int = STREAM_CHUNK_SIZE) -> Iterator[bytes]:
        try:
            for chunk in self.body.iter_chunks(chunk_size):
                yield chunk
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"read {self.info.key} failed: {e}") from e
        finally:
            self.body.close()


def normalize_metadata(raw) -> Dict[str, str]:
    """User metadata as lower-case keys, with any x-amz-meta- header prefix removed."""
    out = {}
    for k, v in (raw or {}).items():
        name = str(k).lower()
        if name.startswith(_USER_META_PREFIX):
            name = name[len(_USER_META_PREFIX):]
        out[name] = v
    return out


def proxy_from_info(info: ObjectInfo) -> Optional[ProxyObject]:
    """Canonical ProxyObject for a stored object, None if the key is not a proxy key."""
    parsed = parse_proxy_key(info.key)
    if parsed is None:
        return None
    job_id, quality = parsed
    return ProxyObject(
        key=info.key,
        job_id=job_id,
        quality=quality,
        quality_tier=tier_of(quality),
        size_bytes=info.size,
        last_accessed_at=parse_ts(info.metadata.get(META_LAST_ACCESSED)),
        expires_at=parse_ts(info.metadata.get(META_EXPIRES_AT)),
    )


class ObjectStore:
    """S3-compatible object store holding the proxy renditions."""

    def __init__(self, client, bucket: str):
        self.client = client
        self.bucket = bucket

    @classmethod
    def from_settings(cls, settings: Settings) -> "ObjectStore":
        return cls(get_s3(settings), settings.proxy_bucket)

    def ensure_bucket(self) -> None:
        try:
            self.client.head_bucket(Bucket=self.bucket)
            return
        except ClientError as e:
            if _error_code(e) not in _MISSING_CODES | {"NoSuchBucket"}:
                raise StorageError(f"bucket check failed: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"bucket check failed: {e}") from e
        try:
            self.client.create_bucket(Bucket=self.bucket)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"bucket create failed: {e}") from e

    def put(self, key: str, data: bytes, metadata: Optional[Dict[str, str]] = None,
            content_type: str = PROXY_CONTENT_TYPE) -> None:
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata=metadata or {},
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"put {key} failed: {e}") from e

    def head(self, key: str) -> Optional[ObjectInfo]:
        try:
            resp = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                return None
            raise StorageError(f"head {key} failed: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"head {key} failed: {e}") from e
        return ObjectInfo(
            key=key,
            size=int(resp.get("ContentLength") or 0),
            metadata=normalize_metadata(resp.get("Metadata")),
            content_type=resp.get("ContentType"),
        )

    def exists(self, key: str) -> bool:
        return self.head(key) is not None

    def open(self, key: str) -> Optional[ObjectStream]:
        """Start reading an object without buffering it; None when missing."""
        try:
            resp = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                return None
            raise StorageError(f"get {key} failed: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"get {key} failed: {e}") from e
        info = ObjectInfo(
            key=key,
            size=int(resp.get("ContentLength") or 0),
            metadata=normalize_metadata(resp.get("Metadata")),
            content_type=resp.get("ContentType"),
        )
        return ObjectStream(info=info, body=resp["Body"])

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"delete {key} failed: {e}") from e

    def list_keys(self, prefix: str, limit: Optional[int] = None) -> Iterator[str]:
        paginator = self.client.get_paginator("list_objects_v2")
        n = 0
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents") or []:
                    if limit is not None and n >= limit:
                        return
                    n += 1
                    yield obj["Key"]
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"list {prefix} failed: {e}") from e

    def replace_metadata(self, key: str, metadata: Dict[str, str]) -> None:
        """Rewrite an object's user metadata in place (server-side copy onto itself)."""
        info = self.head(key)
        if info is None:
            raise StorageError(f"replace metadata on missing object {key}")
        merged = dict(info.metadata)
        merged.update(metadata)
        try:
            self.client.copy_object(
                Bucket=self.bucket,
                Key=key,
                CopySource={"Bucket": self.bucket, "Key": key},
                Metadata=merged,
                MetadataDirective="REPLACE",
                ContentType=info.content_type or PROXY_CONTENT_TYPE,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"metadata update on {key} failed: {e}") from e

    def open_proxy(self, job_id: str, quality: str) -> Optional[ObjectStream]:
        return self.open(proxy_key(job_id, quality))

    def proxy_exists(self, job_id: str, quality: str) -> bool:
        return self.exists(proxy_key(job_id, quality))

    def list_proxy_keys(self, job_id: Optional[str] = None) -> Iterator[str]:
        prefix = PROXY_PREFIX if job_id is None else f"{PROXY_PREFIX}{job_id}/"
        return self.list_keys(prefix)

    def check(self) -> None:
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(str(e)) from e
