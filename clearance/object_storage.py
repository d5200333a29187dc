from __future__ import annotations

import json
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from clearance.timestamps import to_iso, utcnow


def _clean_segment(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    return cleaned or "object"


def _flag(env: Mapping[str, str], name: str, default: str) -> bool:
    return env.get(name, default).strip().lower() not in {"0", "false", "no", "off"}


@dataclass(frozen=True)
class ObjectStorageConfig:
    backend: str
    bucket: str
    root: str
    prefix: str
    endpoint: str
    region: str
    access_key: str
    secret_key: str
    force_path_style: bool


def build_object_key(*, prefix: str, object_type: str, object_id: str, filename: str) -> str:
    """Generated documents live under ``applications/{id}/{type}/{filename}``."""
    base = f"applications/{_clean_segment(object_id)}/{_clean_segment(object_type)}/{_clean_segment(filename)}"
    prefix = prefix.strip("/")
    if prefix:
        return f"{prefix}/{base}"
    return base


class ObjectStorageBackend:
    backend_name = "base"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        self._bucket = config.bucket
        self._prefix = config.prefix.strip("/")

    def put_object(
        self,
        *,
        object_type: str,
        object_id: str,
        filename: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> str:
        raise NotImplementedError

    def _key(self, *, object_type: str, object_id: str, filename: str) -> str:
        return build_object_key(prefix=self._prefix, object_type=object_type, object_id=object_id, filename=filename)

    def _uri_for_key(self, key: str) -> str:
        return f"object://{self.backend_name}/{self._bucket}/{key}"


class LocalObjectStorage(ObjectStorageBackend):
    backend_name = "local"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        super().__init__(config=config)
        self._root = Path(config.root)
        self._root.mkdir(parents=True, exist_ok=True)

    def put_object(
        self,
        *,
        object_type: str,
        object_id: str,
        filename: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> str:
        key = self._key(object_type=object_type, object_id=object_id, filename=filename)
        path = self._root / self._bucket / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content_bytes)
        meta = {"content_type": content_type or "application/octet-stream", "created_at": to_iso(utcnow())}
        Path(f"{path}.meta.json").write_text(json.dumps(meta, ensure_ascii=True, sort_keys=True), encoding="utf-8")
        return self._uri_for_key(key)


class S3ObjectStorage(ObjectStorageBackend):
    backend_name = "s3"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        super().__init__(config=config)
        import boto3

        session = boto3.session.Session(
            aws_access_key_id=config.access_key or None,
            aws_secret_access_key=config.secret_key or None,
            region_name=config.region or None,
        )
        self._client = session.client(
            "s3",
            endpoint_url=config.endpoint or None,
            config=boto3.session.Config(s3={"addressing_style": "path" if config.force_path_style else "auto"}),
        )

    def put_object(
        self,
        *,
        object_type: str,
        object_id: str,
        filename: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> str:
        key = self._key(object_type=object_type, object_id=object_id, filename=filename)
        self._client.put_object(
            Bucket=self._bucket,
            Key=key,
            Body=content_bytes,
            ContentType=content_type or "application/octet-stream",
        )
        return self._uri_for_key(key)


def create_object_storage_from_env(environ: Mapping[str, str] | None = None) -> ObjectStorageBackend:
    env = os.environ if environ is None else environ
    backend = env.get("CLEARANCE_OBJECT_STORAGE_BACKEND", "local").strip().lower() or "local"
    config = ObjectStorageConfig(
        backend=backend,
        bucket=env.get("OBJECT_STORAGE_BUCKET", "clearance").strip() or "clearance",
        root=env.get("OBJECT_STORAGE_ROOT", "/tmp/clearance-object-storage").strip()
        or "/tmp/clearance-object-storage",
        prefix=env.get("OBJECT_STORAGE_PREFIX", "").strip(),
        endpoint=env.get("OBJECT_STORAGE_ENDPOINT", "").strip(),
        region=env.get("OBJECT_STORAGE_REGION", "").strip(),
        access_key=env.get("OBJECT_STORAGE_ACCESS_KEY", "").strip(),
        secret_key=env.get("OBJECT_STORAGE_SECRET_KEY", "").strip(),
        force_path_style=_flag(env, "OBJECT_STORAGE_FORCE_PATH_STYLE", "true"),
    )
    if config.backend == "s3":
        return S3ObjectStorage(config=config)
    if config.backend == "local":
        return LocalObjectStorage(config=config)
    raise RuntimeError(f"unsupported object storage backend: {config.backend}")
