"""
Manifest Service Configuration

Configuration for the database connection, trusted-list sources, node RPC,
cycle scheduling, lifecycle rules and observability, read from the
environment.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from hub_common.exceptions import ConfigurationError
from hub_common.infrastructure import DatabaseConfig
from hub_common.infrastructure.database import DEFAULT_DATABASE_URL

from .domain_verification import DEFAULT_TRUST_FILE_PATH

SOURCE_KIND_HTTP = "http"
SOURCE_KIND_RPC = "rpc"
RPC_LIST_TAG = "rpc"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in ("true", "1", "yes", "on")


@dataclass
class TrustedListSourceConfig:
    """One named trusted-list source; the name doubles as the membership tag."""

    name: str
    kind: str = SOURCE_KIND_HTTP
    url: str | None = None
    publisher_key: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> TrustedListSourceConfig:
        if not isinstance(raw, dict) or not raw.get("name"):
            raise ConfigurationError(f"Trusted list source needs a name: {raw!r}")
        kind = str(raw.get("kind", SOURCE_KIND_HTTP)).lower()
        if kind not in (SOURCE_KIND_HTTP, SOURCE_KIND_RPC):
            raise ConfigurationError(f"Unknown trusted list source kind: {kind}")
        if kind == SOURCE_KIND_HTTP and not raw.get("url"):
            raise ConfigurationError(f"HTTP trusted list source {raw['name']} needs a url")
        return cls(
            name=str(raw["name"]),
            kind=kind,
            url=raw.get("url"),
            publisher_key=raw.get("publisher_key"),
        )


@dataclass
class NetworkConfig:
    """External source configuration."""

    node_rpc_url: str | None = None
    fetch_timeout_seconds: float = 10.0
    max_concurrency: int = 16
    trust_file_path: str = DEFAULT_TRUST_FILE_PATH
    sources: list[TrustedListSourceConfig] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> NetworkConfig:
        node_rpc_url = os.getenv("NODE_RPC_URL") or None
        raw_sources = os.getenv("TRUSTED_LISTS")
        if raw_sources:
            try:
                parsed = json.loads(raw_sources)
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"TRUSTED_LISTS is not valid JSON: {e}") from e
            if not isinstance(parsed, list):
                raise ConfigurationError("TRUSTED_LISTS must be a JSON list")
            sources = [TrustedListSourceConfig.from_dict(item) for item in parsed]
        elif node_rpc_url:
            sources = [TrustedListSourceConfig(name=RPC_LIST_TAG, kind=SOURCE_KIND_RPC)]
        else:
            sources = []

        names = [source.name for source in sources]
        if len(names) != len(set(names)):
            raise ConfigurationError(f"Trusted list source names must be unique: {names}")
        if any(source.kind == SOURCE_KIND_RPC for source in sources) and not node_rpc_url:
            raise ConfigurationError("An rpc trusted list source requires NODE_RPC_URL")

        config = cls(
            node_rpc_url=node_rpc_url,
            fetch_timeout_seconds=_env_float("FETCH_TIMEOUT_SECONDS", 10.0),
            max_concurrency=_env_int("MAX_CONCURRENCY", 16),
            trust_file_path=os.getenv("TRUST_FILE_PATH", DEFAULT_TRUST_FILE_PATH),
            sources=sources,
        )
        if config.fetch_timeout_seconds <= 0:
            raise ConfigurationError("FETCH_TIMEOUT_SECONDS must be positive")
        if config.max_concurrency < 1:
            raise ConfigurationError("MAX_CONCURRENCY must be at least 1")
        return config


@dataclass
class LifecycleConfig:
    """Participant retention and manual fallback configuration."""

    retention_days: int = 7
    manual_domains_file: str | None = None

    @classmethod
    def from_env(cls) -> LifecycleConfig:
        retention_days = _env_int("PARTICIPANT_RETENTION_DAYS", 7)
        if retention_days < 1:
            raise ConfigurationError("PARTICIPANT_RETENTION_DAYS must be at least 1")
        return cls(
            retention_days=retention_days,
            manual_domains_file=os.getenv("MANUAL_DOMAINS_FILE") or None,
        )

    def load_manual_domains(self) -> dict[str, str]:
        """Read the operator-curated master key -> domain mapping, if configured."""
        if not self.manual_domains_file:
            return {}
        path = Path(self.manual_domains_file)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read manual domains file {path}: {e}") from e
        if not isinstance(data, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in data.items()
        ):
            raise ConfigurationError(f"Manual domains file {path} must map master keys to domains")
        return data


@dataclass
class ServiceConfig:
    """General service configuration."""

    service_name: str = "manifest-service"
    cycle_interval_seconds: float = 300.0
    log_level: str = "INFO"
    metrics_enabled: bool = False
    metrics_port: int = 9090

    @classmethod
    def from_env(cls) -> ServiceConfig:
        interval = _env_float("CYCLE_INTERVAL_SECONDS", 300.0)
        if interval <= 0:
            raise ConfigurationError("CYCLE_INTERVAL_SECONDS must be positive")
        return cls(
            service_name=os.getenv("SERVICE_NAME", "manifest-service"),
            cycle_interval_seconds=interval,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            metrics_enabled=_env_bool("METRICS_ENABLED", False),
            metrics_port=_env_int("METRICS_PORT", 9090),
        )


@dataclass
class ManifestServiceConfig:
    """Complete manifest service configuration."""

    database: DatabaseConfig
    network: NetworkConfig
    lifecycle: LifecycleConfig
    service: ServiceConfig

    @classmethod
    def from_env(cls) -> ManifestServiceConfig:
        """Create configuration from environment variables."""
        database = DatabaseConfig(
            url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            echo=_env_bool("DATABASE_ECHO", False),
            pool_size=_env_int("DATABASE_POOL_SIZE", 10),
            max_overflow=_env_int("DATABASE_MAX_OVERFLOW", 20),
        )
        return cls(
            database=database,
            network=NetworkConfig.from_env(),
            lifecycle=LifecycleConfig.from_env(),
            service=ServiceConfig.from_env(),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary (without credentials)."""
        return {
            "database": {"url": self.database.safe_url, "echo": self.database.echo},
            "network": {
                "node_rpc_url": self.network.node_rpc_url,
                "fetch_timeout_seconds": self.network.fetch_timeout_seconds,
                "max_concurrency": self.network.max_concurrency,
                "trust_file_path": self.network.trust_file_path,
                "sources": [
                    {"name": s.name, "kind": s.kind, "url": s.url} for s in self.network.sources
                ],
            },
            "lifecycle": {
                "retention_days": self.lifecycle.retention_days,
                "manual_domains_file": self.lifecycle.manual_domains_file,
            },
            "service": {
                "cycle_interval_seconds": self.service.cycle_interval_seconds,
                "log_level": self.service.log_level,
                "metrics_enabled": self.service.metrics_enabled,
                "metrics_port": self.service.metrics_port,
            },
        }
