"""Blob storage for raw and mastered chapter audio: local directory or S3."""

import logging
import re
import shutil
import threading
import time
import urllib.request
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from urllib.parse import unquote

from audiobookforge.config import Settings, get_config

logger = logging.getLogger(__name__)

_DOWNLOAD_BLOCK_SIZE = 64 * 1024

_S3_PATTERNS = (
    re.compile(r"^s3://(?P<bucket>[^/]+)/(?P<key>.+)$"),
    # Path style: https://s3.region.amazonaws.com/bucket/key
    re.compile(r"^https://s3(?:[.-][^/]+)?\.amazonaws\.com/(?P<bucket>[^/]+)/(?P<key>.+)$"),
    # Virtual-hosted style: https://bucket.s3.region.amazonaws.com/key
    re.compile(r"^https://(?P<bucket>[^/]+)\.s3(?:[.-][^/]+)?\.amazonaws\.com/(?P<key>.+)$"),
)


def parse_s3_uri(uri: str) -> tuple[str, str]:
    """Return ``(bucket, key)`` for an ``s3://`` or ``https://...amazonaws.com`` URI."""
    for pattern in _S3_PATTERNS:
        match = pattern.match(uri)
        if match:
            return match.group("bucket"), unquote(match.group("key"))
    raise ValueError(f"Not an S3 URI: {uri}")


def download_url(url: str, dest: Path, timeout: Optional[float] = None) -> Path:
    """Fetch ``url`` into ``dest``, following redirects.

    ``timeout`` bounds the whole transfer, not just each socket read. The
    body goes to a sibling temp file that is renamed into place, so a
    timed-out download never leaves a truncated ``dest`` behind.
    """
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    partial = dest.with_name(dest.name + ".part")
    deadline = time.monotonic() + timeout if timeout else None
    try:
        with urllib.request.urlopen(url, timeout=timeout) as resp, open(partial, "wb") as f:
            while True:
                block = resp.read(_DOWNLOAD_BLOCK_SIZE)
                if not block:
                    break
                f.write(block)
                if deadline is not None and time.monotonic() > deadline:
                    raise TimeoutError(f"Download of {url} exceeded {timeout}s")
        partial.replace(dest)
    finally:
        partial.unlink(missing_ok=True)
    logger.debug("Downloaded %s -> %s", url, dest)
    return dest


class BlobStore(ABC):
    """Where audio files live between pipeline stages."""

    @abstractmethod
    def put_file(self, key: str, path: Path, content_type: str = "audio/mpeg") -> str:
        """Store a local file under ``key`` and return its URI."""
        ...

    @abstractmethod
    def signed_url(self, uri: str) -> str:
        """Time-limited URL a client can fetch the blob from."""
        ...


class LocalBlobStore(BlobStore):
    """Blobs as files under a root directory, addressed by ``file://`` URIs."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def put_file(self, key: str, path: Path, content_type: str = "audio/mpeg") -> str:
        target = (self.root / key).resolve()
        target.parent.mkdir(parents=True, exist_ok=True)
        if Path(path).resolve() != target:
            shutil.copyfile(path, target)
        return target.as_uri()

    def signed_url(self, uri: str) -> str:
        return uri


class S3BlobStore(BlobStore):
    """Blobs in an S3 bucket; download URLs are presigned."""

    def __init__(self, bucket: str, region: str, url_expiry: int = 3600):
        self.bucket = bucket
        self.region = region
        self.url_expiry = url_expiry
        self._client = None
        self._client_lock = threading.Lock()

    @property
    def client(self):
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    import boto3
                    from botocore.config import Config

                    session = boto3.session.Session(region_name=self.region)
                    self._client = session.client("s3", config=Config(signature_version="s3v4"))
        return self._client

    def put_file(self, key: str, path: Path, content_type: str = "audio/mpeg") -> str:
        self.client.upload_file(str(path), self.bucket, key, ExtraArgs={"ContentType": content_type})
        logger.debug("Uploaded %s to s3://%s/%s", path, self.bucket, key)
        return f"s3://{self.bucket}/{key}"

    def signed_url(self, uri: str) -> str:
        bucket, key = parse_s3_uri(uri)
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=self.url_expiry,
        )


def get_blob_store(settings: Optional[Settings] = None) -> BlobStore:
    """S3 when a bucket is configured, otherwise the local output directory."""
    settings = settings or get_config()
    if settings.s3_bucket_name:
        return S3BlobStore(
            settings.s3_bucket_name,
            settings.aws_region,
            settings.signed_url_expiry_seconds,
        )
    return LocalBlobStore(settings.output_dir)
