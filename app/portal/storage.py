"""
Blob storage for uploaded files (member roster CSVs).

STORAGE_BACKEND=local writes under STORAGE_ROOT; STORAGE_BACKEND=s3 targets
any S3-compatible endpoint (DigitalOcean Spaces in production).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    pass


def _normalize_key(key: str) -> str:
    parts = PurePosixPath(key.replace("\\", "/").lstrip("/")).parts
    if not parts or ".." in parts:
        raise StorageError(f"Invalid storage key: {key!r}")
    return "/".join(parts)


class Storage:
    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        raise NotImplementedError

    def get_bytes(self, key: str) -> bytes:
        raise NotImplementedError


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        path = self.root / _normalize_key(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    def get_bytes(self, key: str) -> bytes:
        path = self.root / _normalize_key(key)
        if not path.is_file():
            raise StorageError(f"No stored object at {key!r}")
        return path.read_bytes()


@dataclass(frozen=True)
class S3Storage(Storage):
    bucket: str
    endpoint: str = ""
    region: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""

    def _client(self):
        return boto3.client(
            "s3",
            endpoint_url=f"https://{self.endpoint}" if self.endpoint else None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id or None,
            aws_secret_access_key=self.secret_access_key or None,
        )

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        extra = {"ContentType": content_type} if content_type else {}
        try:
            self._client().put_object(Bucket=self.bucket, Key=_normalize_key(key), Body=data, **extra)
        except (BotoCoreError, ClientError) as e:
            logger.error("S3 upload failed bucket=%s key=%s: %s", self.bucket, key, e)
            raise StorageError(f"Upload failed for {key!r}") from e

    def get_bytes(self, key: str) -> bytes:
        try:
            obj = self._client().get_object(Bucket=self.bucket, Key=_normalize_key(key))
            return obj["Body"].read()
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"No stored object at {key!r}") from e


def storage_from_config(config: dict) -> Storage:
    if (config.get("STORAGE_BACKEND") or "local").strip().lower() == "s3":
        return S3Storage(
            bucket=(config.get("S3_BUCKET") or "").strip(),
            endpoint=(config.get("S3_ENDPOINT") or "").strip(),
            region=(config.get("S3_REGION") or "").strip(),
            access_key_id=(config.get("S3_ACCESS_KEY_ID") or "").strip(),
            secret_access_key=(config.get("S3_SECRET_ACCESS_KEY") or "").strip(),
        )
    return LocalStorage(root=Path(config.get("STORAGE_ROOT") or Path(os.getcwd()) / "storage"))
