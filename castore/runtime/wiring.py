from __future__ import annotations

from pathlib import Path
from typing import Iterator, Mapping, Optional

from castore.config import CastoreConfig
from castore.errors import InvalidArgumentError
from castore.llm.providers import LLMProvider, OpenRouterChatProvider
from castore.observability.metrics import CommandMetrics
from castore.store.blob_store import BlobStore, FileBlobStore


class MeteredBlobStore:
    """Delegating store that counts bytes handed to ``put``."""

    def __init__(self, inner: BlobStore, *, metrics: CommandMetrics) -> None:
        self._inner = inner
        self._metrics = metrics

    def put(self, data: bytes) -> str:
        digest = self._inner.put(data)
        self._metrics.observe_put(size_bytes=len(data))
        return digest

    def get(self, digest: str) -> bytes:
        return self._inner.get(digest)

    def exists(self, digest: str) -> bool:
        return self._inner.exists(digest)

    def iter_digests(self) -> Iterator[str]:
        return self._inner.iter_digests()


def open_blob_store(config: CastoreConfig) -> BlobStore:
    store_cfg = config.store
    if store_cfg.backend == "filesystem":
        return FileBlobStore(root=Path(store_cfg.root), verify_on_read=store_cfg.verify_on_read)
    if store_cfg.backend == "s3":
        from castore.store.s3_blob_store import S3BlobStore

        if store_cfg.s3 is None:
            raise InvalidArgumentError("store.s3 is required when store.backend is s3")
        return S3BlobStore(config=store_cfg.s3, verify_on_read=store_cfg.verify_on_read)
    raise InvalidArgumentError(f"unsupported store backend: {store_cfg.backend}")


def build_llm_provider(config: CastoreConfig, *, environ: Optional[Mapping[str, str]] = None) -> LLMProvider:
    return OpenRouterChatProvider(
        api_base=config.llm.api_base,
        api_key_env=config.llm.api_key_env,
        timeout_seconds=config.llm.timeout_seconds,
        environ=environ,
    )
