from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from castore.digest import sha256_prefixed

DEFAULT_ROOT = "cas"
DEFAULT_AUDIT_FILENAME = "_audit.db"
DEFAULT_API_BASE = "https://openrouter.ai/api/v1"
DEFAULT_API_KEY_ENV = "OPENROUTER_API_KEY"

STORE_BACKENDS = ("filesystem", "s3")
AUDIT_BACKENDS = ("sqlite", "postgres")


def _require_dict(obj: Any, *, path: str) -> dict[str, Any]:
    if not isinstance(obj, dict):
        raise ValueError(f"{path} must be a mapping")
    return obj


def _optional_dict(obj: Any, *, path: str) -> dict[str, Any]:
    if obj is None:
        return {}
    return _require_dict(obj, path=path)


def _require_str(obj: Any, *, path: str) -> str:
    if not isinstance(obj, str) or not obj:
        raise ValueError(f"{path} must be a non-empty string")
    return obj


def _optional_str(obj: Any, *, path: str) -> Optional[str]:
    if obj is None:
        return None
    return _require_str(obj, path=path)


def _require_bool(obj: Any, *, path: str) -> bool:
    if not isinstance(obj, bool):
        raise ValueError(f"{path} must be a boolean")
    return obj


def _require_int(obj: Any, *, path: str) -> int:
    if isinstance(obj, bool) or not isinstance(obj, int):
        raise ValueError(f"{path} must be an integer")
    return obj


def _require_float(obj: Any, *, path: str) -> float:
    if isinstance(obj, bool):
        raise ValueError(f"{path} must be a number")
    if isinstance(obj, (int, float)):
        return float(obj)
    raise ValueError(f"{path} must be a number")


@dataclass(frozen=True)
class S3Config:
    bucket: str
    endpoint_url: Optional[str] = None
    region_name: Optional[str] = None
    key_prefix: str = ""
    force_path_style: bool = True


@dataclass(frozen=True)
class StoreConfig:
    backend: str = "filesystem"
    root: str = DEFAULT_ROOT
    verify_on_read: bool = True
    s3: Optional[S3Config] = None


@dataclass(frozen=True)
class AuditConfig:
    backend: str = "sqlite"
    path: Optional[str] = None
    pg_dsn: Optional[str] = None
    busy_timeout_ms: int = 5000


@dataclass(frozen=True)
class LLMConfig:
    api_base: str = DEFAULT_API_BASE
    api_key_env: str = DEFAULT_API_KEY_ENV
    timeout_seconds: float = 120.0


@dataclass(frozen=True)
class ObservabilityConfig:
    tracing_enabled: bool = False
    events_path: Optional[str] = None
    metrics_textfile: Optional[str] = None


@dataclass(frozen=True)
class CastoreConfig:
    store: StoreConfig = field(default_factory=StoreConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    config_path: Optional[str] = None
    config_sha256: Optional[str] = None

    def resolve_root(self) -> Path:
        return Path(self.store.root)

    def resolve_audit_path(self) -> Path:
        if self.audit.path:
            return Path(self.audit.path)
        return self.resolve_root() / DEFAULT_AUDIT_FILENAME


def _parse_s3(obj: Any) -> Optional[S3Config]:
    if obj is None:
        return None
    s3 = _require_dict(obj, path="store.s3")
    key_prefix = s3.get("key_prefix", "")
    if not isinstance(key_prefix, str):
        raise ValueError("store.s3.key_prefix must be a string")
    return S3Config(
        bucket=_require_str(s3.get("bucket"), path="store.s3.bucket"),
        endpoint_url=_optional_str(s3.get("endpoint_url"), path="store.s3.endpoint_url"),
        region_name=_optional_str(s3.get("region_name"), path="store.s3.region_name"),
        key_prefix=key_prefix,
        force_path_style=_require_bool(s3.get("force_path_style", True), path="store.s3.force_path_style"),
    )


def parse_config(doc: Any) -> CastoreConfig:
    doc = _optional_dict(doc, path="config")

    store = _optional_dict(doc.get("store"), path="store")
    backend = _require_str(store.get("backend", "filesystem"), path="store.backend")
    if backend not in STORE_BACKENDS:
        raise ValueError(f"store.backend must be one of {', '.join(STORE_BACKENDS)}")
    s3_cfg = _parse_s3(store.get("s3"))
    if backend == "s3" and s3_cfg is None:
        raise ValueError("store.s3 is required when store.backend is s3")
    store_cfg = StoreConfig(
        backend=backend,
        root=_require_str(store.get("root", DEFAULT_ROOT), path="store.root"),
        verify_on_read=_require_bool(store.get("verify_on_read", True), path="store.verify_on_read"),
        s3=s3_cfg,
    )

    audit = _optional_dict(doc.get("audit"), path="audit")
    audit_backend = _require_str(audit.get("backend", "sqlite"), path="audit.backend")
    if audit_backend not in AUDIT_BACKENDS:
        raise ValueError(f"audit.backend must be one of {', '.join(AUDIT_BACKENDS)}")
    busy_timeout_ms = _require_int(audit.get("busy_timeout_ms", 5000), path="audit.busy_timeout_ms")
    if busy_timeout_ms < 0:
        raise ValueError("audit.busy_timeout_ms must be >= 0")
    audit_cfg = AuditConfig(
        backend=audit_backend,
        path=_optional_str(audit.get("path"), path="audit.path"),
        pg_dsn=_optional_str(audit.get("pg_dsn"), path="audit.pg_dsn"),
        busy_timeout_ms=busy_timeout_ms,
    )

    llm = _optional_dict(doc.get("llm"), path="llm")
    timeout_seconds = _require_float(llm.get("timeout_seconds", 120), path="llm.timeout_seconds")
    if timeout_seconds <= 0:
        raise ValueError("llm.timeout_seconds must be > 0")
    llm_cfg = LLMConfig(
        api_base=_require_str(llm.get("api_base", DEFAULT_API_BASE), path="llm.api_base").rstrip("/"),
        api_key_env=_require_str(llm.get("api_key_env", DEFAULT_API_KEY_ENV), path="llm.api_key_env"),
        timeout_seconds=timeout_seconds,
    )

    obs = _optional_dict(doc.get("observability"), path="observability")
    obs_cfg = ObservabilityConfig(
        tracing_enabled=_require_bool(obs.get("tracing_enabled", False), path="observability.tracing_enabled"),
        events_path=_optional_str(obs.get("events_path"), path="observability.events_path"),
        metrics_textfile=_optional_str(obs.get("metrics_textfile"), path="observability.metrics_textfile"),
    )

    return CastoreConfig(store=store_cfg, audit=audit_cfg, llm=llm_cfg, observability=obs_cfg)


def load_config(*, path: Optional[Path] = None) -> CastoreConfig:
    if path is None:
        return CastoreConfig()
    data_bytes = path.read_bytes()
    doc = yaml.safe_load(data_bytes.decode("utf-8"))
    cfg = parse_config(doc)
    return replace(cfg, config_path=path.as_posix(), config_sha256=sha256_prefixed(data_bytes))


def apply_overrides(
    cfg: CastoreConfig,
    *,
    root: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> CastoreConfig:
    """Layer the environment and then explicit arguments over a loaded config."""

    env = os.environ if environ is None else environ

    store = cfg.store
    env_root = env.get("CASTORE_ROOT")
    if env_root:
        store = replace(store, root=env_root)
    if root:
        store = replace(store, root=root)

    audit = cfg.audit
    env_dsn = env.get("CASTORE_PG_DSN")
    if audit.pg_dsn is None and env_dsn:
        audit = replace(audit, pg_dsn=env_dsn)

    llm = cfg.llm
    env_base = env.get("OPENROUTER_API_BASE")
    if env_base:
        llm = replace(llm, api_base=env_base.rstrip("/"))

    return replace(cfg, store=store, audit=audit, llm=llm)
