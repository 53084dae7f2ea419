"""
Object store gateway.

Two interchangeable backends behind the same `ObjectStore` interface:

 - `S3ObjectStore` talks to S3 (or any S3-compatible endpoint) through boto3
   and hands out presigned GET URLs.
 - `LocalObjectStore` keeps blobs on disk and signs its own URLs with an
   HMAC, served back by the API's `/files/{key}` route. It exists for local
   development and for exercising URL expiry with an injected clock.

`put` overwrites, `get` raises `NotFound` for absent keys, and `signed_url`
never checks that the object exists.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
import hashlib
import hmac
import logging
import math
import os
from pathlib import Path, PurePosixPath
import time
from typing import Callable, Optional
from urllib.parse import quote, urlencode
import uuid

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from . import config
from .errors import NotFound, StoreUnavailable
from .models import AccessLink, StoredObject

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


def _validate_ttl(ttl: int) -> int:
    if isinstance(ttl, bool) or not isinstance(ttl, (int, float)) or not math.isfinite(ttl) or ttl <= 0:
        raise ValueError("Signed URL ttl must be a positive, finite number of seconds")
    return int(ttl)


def _expiry(clock: Clock, ttl: int) -> datetime:
    return datetime.fromtimestamp(clock() + ttl, tz=timezone.utc)


class ObjectStore(ABC):
    """Interface for blob storage used by the pipeline."""

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str) -> StoredObject:
        """Store `data` under `key`, replacing any previous content."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Return the bytes stored under `key`."""

    @abstractmethod
    def signed_url(self, key: str, ttl: int) -> AccessLink:
        """Derive a time-bounded read URL for `key`."""


def build_s3_client(settings: config.Settings):
    settings.require_s3()
    session = boto3.session.Session()
    return session.client(
        service_name="s3",
        region_name=settings.aws_region,
        aws_access_key_id=settings.aws_access_key_id,
        aws_secret_access_key=settings.aws_secret_access_key,
        endpoint_url=settings.s3_endpoint_url,
        config=BotoConfig(
            signature_version="s3v4",
            connect_timeout=settings.store_connect_timeout_seconds,
            read_timeout=settings.store_read_timeout_seconds,
            retries={"total_max_attempts": 1, "mode": "standard"},
        ),
    )


class S3ObjectStore(ObjectStore):
    def __init__(self, settings: config.Settings, client=None, clock: Clock = time.time):
        settings.require_s3()
        self.bucket = settings.s3_bucket_name
        self._client = client or build_s3_client(settings)
        self._clock = clock

    def put(self, key: str, data: bytes, content_type: str) -> StoredObject:
        try:
            self._client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as exc:
            raise StoreUnavailable(f"Failed to upload {key} to storage: {exc}") from exc
        logger.info("Stored s3://%s/%s (%d bytes, %s)", self.bucket, key, len(data), content_type)
        return StoredObject(key=key, content_type=content_type, data=data)

    def get(self, key: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _MISSING_CODES:
                raise NotFound(f"Object not found in storage: {key}") from exc
            raise StoreUnavailable(f"Failed to fetch {key} from storage: {exc}") from exc
        except BotoCoreError as exc:
            raise StoreUnavailable(f"Failed to fetch {key} from storage: {exc}") from exc

    def signed_url(self, key: str, ttl: int) -> AccessLink:
        ttl = _validate_ttl(ttl)
        try:
            url = self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=ttl,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StoreUnavailable(f"Failed to sign URL for {key}: {exc}") from exc
        return AccessLink(url=url, key=key, expires_at=_expiry(self._clock, ttl))


class LocalObjectStore(ObjectStore):
    """Filesystem-backed store that signs URLs for the API's `/files` route."""

    def __init__(self, root: Path, secret: str, base_url: str, clock: Clock = time.time):
        self.root = Path(root)
        self._meta_root = self.root / ".meta"
        self._secret = secret.encode("utf-8")
        self._base_url = base_url.rstrip("/")
        self._clock = clock

    def _path(self, key: str, root: Optional[Path] = None) -> Path:
        pure = PurePosixPath(key)
        if not key or not pure.parts or pure.is_absolute() or ".." in pure.parts or pure.parts[0] == ".meta":
            raise NotFound(f"Object not found in storage: {key}")
        return (root or self.root).joinpath(*pure.parts)

    def put(self, key: str, data: bytes, content_type: str) -> StoredObject:
        path = self._path(key)
        meta = self._path(key, self._meta_root)
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.part")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            meta.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            os.replace(tmp, path)
            meta.write_text(content_type, encoding="utf-8")
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise StoreUnavailable(f"Failed to write {key} to local storage: {exc}") from exc
        logger.info("Stored %s locally (%d bytes, %s)", key, len(data), content_type)
        return StoredObject(key=key, content_type=content_type, data=data)

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except (FileNotFoundError, IsADirectoryError) as exc:
            raise NotFound(f"Object not found in storage: {key}") from exc
        except OSError as exc:
            raise StoreUnavailable(f"Failed to read {key} from local storage: {exc}") from exc

    def content_type(self, key: str) -> str:
        try:
            return self._path(key, self._meta_root).read_text(encoding="utf-8").strip()
        except OSError:
            return "application/octet-stream"

    def _signature(self, key: str, expires: int) -> str:
        message = f"{key}\n{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def signed_url(self, key: str, ttl: int) -> AccessLink:
        ttl = _validate_ttl(ttl)
        expires = int(self._clock()) + ttl
        query = urlencode({"expires": expires, "signature": self._signature(key, expires)})
        url = f"{self._base_url}/files/{quote(key)}?{query}"
        return AccessLink(url=url, key=key, expires_at=datetime.fromtimestamp(expires, tz=timezone.utc))

    def verify(self, key: str, expires: int, signature: str) -> bool:
        """True when `signature` matches and the link has not yet expired."""
        expected = self._signature(key, expires)
        if not hmac.compare_digest(expected, signature):
            return False
        return self._clock() < expires


def build_object_store(settings: Optional[config.Settings] = None) -> ObjectStore:
    """Create the configured backend; raises ConfigurationError when S3 settings are incomplete."""
    settings = settings or config.get_settings()
    if settings.storage_backend == "local":
        return LocalObjectStore(
            root=settings.local_storage_dir,
            secret=settings.url_signing_secret,
            base_url=settings.public_base_url,
        )
    return S3ObjectStore(settings)
