from __future__ import annotations

from typing import Any, Iterator, Optional

from castore.config import S3Config
from castore.digest import digest as compute_digest
from castore.digest import is_digest
from castore.errors import IntegrityError, IOFailureError, NotFoundError
from castore.store.blob_store import SHARD_WIDTH, shard_parts

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


def _client_error_code(exc: Exception) -> Optional[str]:
    response = getattr(exc, "response", None)
    if not isinstance(response, dict):
        return None
    error = response.get("Error")
    code = error.get("Code") if isinstance(error, dict) else None
    return str(code) if code is not None else None


class S3BlobStore:
    """Content-addressed blob store in an S3 bucket, using the filesystem shard layout as keys."""

    def __init__(self, *, config: S3Config, client: Any = None, verify_on_read: bool = True) -> None:
        self._config = config
        self._client = client
        self._verify_on_read = verify_on_read

    def _get_client(self):
        if self._client is not None:
            return self._client

        try:
            import boto3  # type: ignore
            from botocore.config import Config as BotoConfig  # type: ignore
        except Exception as e:  # pragma: no cover
            raise RuntimeError("boto3 is required for S3BlobStore") from e

        s3_cfg = {}
        if self._config.force_path_style:
            s3_cfg["addressing_style"] = "path"
        botocfg = BotoConfig(s3=s3_cfg) if s3_cfg else None

        self._client = boto3.client(
            "s3",
            endpoint_url=self._config.endpoint_url,
            region_name=self._config.region_name,
            config=botocfg,
        )
        return self._client

    def _prefix(self) -> str:
        prefix = self._config.key_prefix.strip("/")
        return f"{prefix}/" if prefix else ""

    def key_for(self, digest: str) -> str:
        shard, name = shard_parts(digest)
        return f"{self._prefix()}{shard}/{name}"

    def exists(self, digest: str) -> bool:
        client = self._get_client()
        try:
            client.head_object(Bucket=self._config.bucket, Key=self.key_for(digest))
        except Exception as e:
            if _client_error_code(e) in _MISSING_CODES:
                return False
            raise IOFailureError(f"s3 head_object failed for {digest}: {e}") from e
        return True

    def put(self, data: bytes) -> str:
        digest = compute_digest(data)
        if self.exists(digest):
            return digest

        client = self._get_client()
        try:
            client.put_object(
                Bucket=self._config.bucket,
                Key=self.key_for(digest),
                Body=data,
                Metadata={"sha256": digest, "size_bytes": str(len(data))},
            )
        except Exception as e:
            raise IOFailureError(f"s3 put_object failed for {digest}: {e}") from e
        return digest

    def get(self, digest: str) -> bytes:
        client = self._get_client()
        try:
            obj = client.get_object(Bucket=self._config.bucket, Key=self.key_for(digest))
        except Exception as e:
            if _client_error_code(e) in _MISSING_CODES:
                raise NotFoundError(digest) from None
            raise IOFailureError(f"s3 get_object failed for {digest}: {e}") from e

        body = obj.get("Body") if isinstance(obj, dict) else None
        if body is None:
            raise IOFailureError("s3 get_object returned no Body")
        data = body.read()

        if self._verify_on_read:
            actual = compute_digest(data)
            if actual != digest:
                raise IntegrityError(expected=digest, actual=actual)
        return data

    def iter_digests(self) -> Iterator[str]:
        client = self._get_client()
        prefix = self._prefix()
        paginator = client.get_paginator("list_objects_v2")
        found: list[str] = []
        try:
            for page in paginator.paginate(Bucket=self._config.bucket, Prefix=prefix):
                for item in page.get("Contents") or []:
                    rel = str(item.get("Key", ""))[len(prefix) :]
                    shard, _, name = rel.partition("/")
                    if len(shard) == SHARD_WIDTH and is_digest(shard + name):
                        found.append(shard + name)
        except Exception as e:
            raise IOFailureError(f"s3 list_objects_v2 failed: {e}") from e
        yield from sorted(found)
