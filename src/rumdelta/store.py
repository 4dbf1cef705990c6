"""Blob store for the sync cursor and the run artifacts.

Two backends share one small interface:
- S3CursorStore: an S3 bucket (boto3); what the scheduled Lambda uses
- LocalCursorStore: a directory tree; for manual runs on a workstation

Keys are `/`-separated and already carry the configured prefix, see `join_key`.
`get` returns None when the key does not exist and raises CursorReadError on any
other failure; `put` raises CommitError. Callers decide what is fatal.

Example
  store = S3CursorStore("my-bucket", region="ap-southeast-1")
  store.put(join_key("RUM-CSV-data", "deltaToken.txt"), b"tok")
  print(store.get("RUM-CSV-data/deltaToken.txt"))
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import StoreConfig
from .errors import CommitError, CursorReadError

__all__ = [
    "CursorStore",
    "LocalCursorStore",
    "S3CursorStore",
    "build_store",
    "join_key",
]

log = logging.getLogger(__name__)

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


def join_key(prefix: str, name: str) -> str:
    prefix = prefix.strip("/")
    name = name.lstrip("/")
    return f"{prefix}/{name}" if prefix else name


class CursorStore(Protocol):
    def get(self, key: str) -> bytes | None: ...

    def put(self, key: str, data: bytes, content_type: str | None = None) -> None: ...


class S3CursorStore:
    def __init__(
        self,
        bucket: str,
        *,
        region: str | None = None,
        endpoint_url: str | None = None,
        client: Any | None = None,
    ) -> None:
        self.bucket = bucket
        self._s3 = client or boto3.client("s3", region_name=region, endpoint_url=endpoint_url)

    def get(self, key: str) -> bytes | None:
        try:
            obj = self._s3.get_object(Bucket=self.bucket, Key=key)
            return obj["Body"].read()
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _MISSING_CODES:
                return None
            raise CursorReadError(f"s3://{self.bucket}/{key}: {code or exc}") from exc
        except BotoCoreError as exc:
            raise CursorReadError(f"s3://{self.bucket}/{key}: {exc}") from exc

    def put(self, key: str, data: bytes, content_type: str | None = None) -> None:
        kwargs: dict[str, Any] = {"Bucket": self.bucket, "Key": key, "Body": data}
        if content_type:
            kwargs["ContentType"] = content_type
        try:
            self._s3.put_object(**kwargs)
        except (ClientError, BotoCoreError) as exc:
            raise CommitError(f"s3://{self.bucket}/{key}: {exc}") from exc
        log.debug("s3-put key=%s bytes=%d", key, len(data))


class LocalCursorStore:
    """Directory-backed store. Content types are not recorded."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        p = (self.root / key).resolve()
        try:
            p.relative_to(self.root.resolve())
        except ValueError as exc:
            raise ValueError(f"key '{key}' escapes store root {self.root}") from exc
        return p

    def get(self, key: str) -> bytes | None:
        p = self._path(key)
        try:
            return p.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise CursorReadError(f"{p}: {exc}") from exc

    def put(self, key: str, data: bytes, content_type: str | None = None) -> None:
        p = self._path(key)
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            # Write-then-rename so a reader never sees a half-written cursor
            tmp = p.with_name(p.name + ".tmp")
            tmp.write_bytes(data)
            tmp.replace(p)
        except OSError as exc:
            raise CommitError(f"{p}: {exc}") from exc


def build_store(cfg: StoreConfig) -> CursorStore:
    if cfg.backend == "local":
        return LocalCursorStore(cfg.local_root)
    if not cfg.bucket:
        raise ValueError("store.bucket is required when store.backend is 's3'")
    return S3CursorStore(cfg.bucket, region=cfg.region, endpoint_url=cfg.endpoint_url)
