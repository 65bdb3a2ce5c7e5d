"""
Gateway configuration.

All collaborator documents (gateway settings, tool manifest, tenant and policy
documents) are read from YAML into one immutable ConfigSnapshot. A reload
builds a complete new snapshot and swaps a single reference, so a request
that dereferences the holder once sees either the old or the new
configuration in full.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, Generic, Mapping, Optional, Tuple, TypeVar

import yaml

logger = logging.getLogger("actions_gateway.config")

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "gateway.yaml"
DEFAULT_TENANT = "demo"
DEFAULT_RPS = 50.0
DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RESET_MS = 10_000
DEFAULT_FRESH_TTL_MS = 30_000
DEFAULT_STALE_WINDOW_MS = 120_000
DEFAULT_IDEMPOTENCY_TTL_SECONDS = 7 * 24 * 3600
MIN_IDEMPOTENCY_TTL_SECONDS = 60

T = TypeVar("T")


def load_config(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Gateway config not found at {path}")
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be a mapping ({path})")
    return data


def _positive(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


@dataclass(frozen=True)
class RateLimitConfig:
    rps: float = DEFAULT_RPS
    burst: float = DEFAULT_RPS * 2

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "RateLimitConfig":
        data = data or {}
        rps = _positive(data.get("rps"), DEFAULT_RPS)
        burst = _positive(data.get("burst"), rps * 2)
        return cls(rps=rps, burst=burst)


@dataclass(frozen=True)
class BreakerConfig:
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    reset_ms: int = DEFAULT_RESET_MS

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "BreakerConfig":
        data = data or {}
        return cls(
            failure_threshold=int(_positive(data.get("failure_threshold"), DEFAULT_FAILURE_THRESHOLD)),
            reset_ms=int(_positive(data.get("reset_ms"), DEFAULT_RESET_MS)),
        )


@dataclass(frozen=True)
class CacheConfig:
    fresh_ttl_ms: int = DEFAULT_FRESH_TTL_MS
    stale_window_ms: int = DEFAULT_STALE_WINDOW_MS

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "CacheConfig":
        data = data or {}
        fresh = int(_positive(
            data.get("fresh_ttl_ms", data.get("customer_lookup_ttl_ms")), DEFAULT_FRESH_TTL_MS
        ))
        stale = int(_positive(
            data.get("stale_window_ms", data.get("stale_while_revalidate_ms")), DEFAULT_STALE_WINDOW_MS
        ))
        # a stale window shorter than the fresh TTL would never serve stale data
        return cls(fresh_ttl_ms=fresh, stale_window_ms=max(fresh, stale))


@dataclass(frozen=True)
class TenantContext:
    tenant_id: str
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    breaker: BreakerConfig = field(default_factory=BreakerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    connectors: Mapping[str, Any] = field(default_factory=dict)
    known: bool = True

    @classmethod
    def from_mapping(cls, tenant_id: str, data: Mapping[str, Any]) -> "TenantContext":
        return cls(
            tenant_id=str(data.get("tenant_id") or tenant_id),
            rate_limit=RateLimitConfig.from_mapping(data.get("rate_limiter")),
            breaker=BreakerConfig.from_mapping(data.get("circuit_breaker")),
            cache=CacheConfig.from_mapping(data.get("cache")),
            connectors=MappingProxyType(dict(data.get("connectors", {}) or {})),
        )

    @classmethod
    def unknown(cls, tenant_id: str) -> "TenantContext":
        """Defaults used for admission when a tenant has no configuration."""
        return cls(tenant_id=tenant_id, known=False)


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    input_schema: Mapping[str, Any]
    output_schema: Mapping[str, Any]
    side_effects: str = "read"
    scopes_required: Tuple[str, ...] = ()
    cacheable: bool = False
    policy: Optional[str] = None

    @property
    def is_write(self) -> bool:
        return self.side_effects == "write"

    @property
    def path(self) -> str:
        return "/tools/" + self.name.replace(".", "/")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ToolDescriptor":
        name = str(data.get("name") or "").strip()
        if not name:
            raise ValueError("Tool manifest entry without a name")
        side_effects = str(data.get("side_effects", "read")).lower()
        if side_effects not in ("read", "write"):
            raise ValueError(f"Tool {name}: side_effects must be 'read' or 'write'")
        scopes = data.get("scopes_required") or []
        return cls(
            name=name,
            description=str(data.get("description", "")),
            input_schema=copy.deepcopy(data.get("input_schema") or {"type": "object"}),
            output_schema=copy.deepcopy(data.get("output_schema") or {"type": "object"}),
            side_effects=side_effects,
            scopes_required=tuple(str(s) for s in scopes),
            cacheable=bool(data.get("cacheable", False)) and side_effects == "read",
            policy=data.get("policy"),
        )


@dataclass(frozen=True)
class GatewaySettings:
    name: str = "actions-gateway"
    host: str = "127.0.0.1"
    port: int = 3030
    log_level: str = "INFO"
    reload_interval_seconds: float = 0.0
    default_tenant: str = DEFAULT_TENANT
    database_url: str = ""
    redis_url: str = ""
    outbox_path: Optional[Path] = None
    idempotency_ttl_seconds: int = DEFAULT_IDEMPOTENCY_TTL_SECONDS
    store_timeout_ms: int = 250
    handler_timeout_ms: int = 5000
    auth: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], base_dir: Path) -> "GatewaySettings":
        server_cfg = data.get("server", {}) or {}
        storage_cfg = data.get("storage", {}) or {}
        timeouts_cfg = data.get("timeouts", {}) or {}
        idem_cfg = data.get("idempotency", {}) or {}
        outbox_cfg = data.get("outbox", {}) or {}

        outbox_path = outbox_cfg.get("path")
        ttl = int(idem_cfg.get("ttl_seconds", DEFAULT_IDEMPOTENCY_TTL_SECONDS))
        return cls(
            name=str(server_cfg.get("name", "actions-gateway")),
            host=os.getenv("ACTIONS_GATEWAY_HOST", str(server_cfg.get("host", "127.0.0.1"))),
            port=int(os.getenv("ACTIONS_GATEWAY_PORT", str(server_cfg.get("port", 3030)))),
            log_level=str(server_cfg.get("log_level", "INFO")).upper(),
            reload_interval_seconds=float(server_cfg.get("reload_interval_seconds", 0) or 0),
            default_tenant=str(server_cfg.get("default_tenant", DEFAULT_TENANT)),
            database_url=os.getenv("DATABASE_URL", str(storage_cfg.get("database_url", "") or "")).strip(),
            redis_url=os.getenv("REDIS_URL", str(storage_cfg.get("redis_url", "") or "")).strip(),
            outbox_path=(base_dir / outbox_path) if outbox_path else None,
            idempotency_ttl_seconds=max(MIN_IDEMPOTENCY_TTL_SECONDS, ttl),
            store_timeout_ms=int(timeouts_cfg.get("store_ms", 250)),
            handler_timeout_ms=int(timeouts_cfg.get("handler_ms", 5000)),
            auth=MappingProxyType(dict(data.get("auth", {}) or {})),
        )


@dataclass(frozen=True)
class ConfigSnapshot:
    settings: GatewaySettings
    tools: Mapping[str, ToolDescriptor]
    tenants: Mapping[str, TenantContext]
    policies: Mapping[str, Mapping[str, Any]]
    source_dir: Path
    loaded_at: float = field(default_factory=time.time)

    def tenant(self, tenant_id: str) -> TenantContext:
        context = self.tenants.get(tenant_id)
        if context is None:
            return TenantContext.unknown(tenant_id)
        return context

    def policy(self, tenant_id: str) -> Mapping[str, Any]:
        return self.policies.get(tenant_id) or MappingProxyType({})


def _load_documents(directory: Path) -> Dict[str, Dict[str, Any]]:
    documents: Dict[str, Dict[str, Any]] = {}
    if not directory.is_dir():
        return documents
    for path in sorted(directory.iterdir()):
        if path.suffix.lower() not in (".yaml", ".yml", ".json"):
            continue
        documents[path.stem] = load_config(path)
    return documents


def build_snapshot(config_path: Optional[Path] = None) -> ConfigSnapshot:
    """Read every configuration document and return a new snapshot."""
    path = Path(config_path or os.getenv("ACTIONS_GATEWAY_CONFIG", str(DEFAULT_CONFIG_PATH)))
    data = load_config(path)
    base_dir = path.resolve().parent
    settings = GatewaySettings.from_mapping(data, base_dir)

    paths_cfg = data.get("paths", {}) or {}
    manifest_path = base_dir / paths_cfg.get("manifest", "manifest/tools.yaml")
    tenants_dir = base_dir / paths_cfg.get("tenants", "tenants")
    policies_dir = base_dir / paths_cfg.get("policies", "policies")

    manifest = load_config(manifest_path)
    tools: Dict[str, ToolDescriptor] = {}
    for entry in manifest.get("tools", []) or []:
        descriptor = ToolDescriptor.from_mapping(entry)
        if descriptor.name in tools:
            raise ValueError(f"Duplicate tool in manifest: {descriptor.name}")
        tools[descriptor.name] = descriptor

    tenants = {
        tenant_id: TenantContext.from_mapping(tenant_id, doc)
        for tenant_id, doc in _load_documents(tenants_dir).items()
    }
    policies = {
        tenant_id: MappingProxyType(doc) for tenant_id, doc in _load_documents(policies_dir).items()
    }

    return ConfigSnapshot(
        settings=settings,
        tools=MappingProxyType(tools),
        tenants=MappingProxyType(tenants),
        policies=MappingProxyType(policies),
        source_dir=base_dir,
    )


class SnapshotHolder(Generic[T]):
    """Holds one immutable value and replaces it atomically."""

    def __init__(self, loader: Callable[[], T], initial: Optional[T] = None) -> None:
        self._loader = loader
        self._lock = threading.Lock()
        self._value: T = initial if initial is not None else loader()
        self.version = 1

    def current(self) -> T:
        return self._value

    def swap(self, value: T) -> None:
        with self._lock:
            self._value = value
            self.version += 1

    def reload(self) -> bool:
        """Rebuild from the loader. A failing load keeps the current value."""
        try:
            value = self._loader()
        except Exception as exc:
            logger.error(f"Config reload failed, keeping previous snapshot: {exc}", exc_info=True)
            return False
        self.swap(value)
        logger.info(f"Config snapshot reloaded (version {self.version})")
        return True


def config_fingerprint(directory: Path) -> Tuple[Tuple[str, int, int], ...]:
    entries = []
    for path in sorted(directory.rglob("*")):
        if path.is_file() and path.suffix.lower() in (".yaml", ".yml", ".json"):
            stat = path.stat()
            entries.append((str(path), stat.st_mtime_ns, stat.st_size))
    return tuple(entries)


async def watch_config(holder: SnapshotHolder[Any], directory: Path, interval_seconds: float) -> None:
    """Poll the config directory and reload the snapshot when a file changes."""
    fingerprint = config_fingerprint(directory)
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            current = config_fingerprint(directory)
        except OSError as exc:
            logger.warning(f"Config directory scan failed: {exc}")
            continue
        if current != fingerprint:
            fingerprint = current
            holder.reload()
