from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from sda.errors import ConfigError
from sda.storage import StorageConfig, storage_config_from_env

SERVICES = {"sync", "verify"}


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number") from exc
    return max(minimum, value)


def _required(env: Mapping[str, str], name: str) -> str:
    value = str(env.get(name, "")).strip()
    if not value:
        raise ConfigError(f"{name} must be set")
    return value


@dataclass(frozen=True)
class BrokerConfig:
    queue: str
    exchange: str
    routing_key: str
    routing_error: str
    durable: bool
    poll_interval_s: float
    watch_interval_s: float


@dataclass(frozen=True)
class C4GHConfig:
    key_path: str
    passphrase: str


@dataclass(frozen=True)
class WorkerConfig:
    service: str
    broker: BrokerConfig
    archive: StorageConfig
    backup: StorageConfig | None = None
    c4gh: C4GHConfig | None = None


def _validate_storage(role: str, config: StorageConfig) -> StorageConfig:
    if config.backend == "posix" and not config.location:
        raise ConfigError(f"{role}_LOCATION must be set for posix storage")
    if config.backend == "s3":
        for name, value in (("URL", config.url), ("BUCKET", config.bucket)):
            if not value:
                raise ConfigError(f"{role}_{name} must be set for s3 storage")
    if config.backend not in {"posix", "s3"}:
        raise ConfigError(f"{role}_TYPE must be posix or s3, got {config.backend}")
    return config


def broker_config_from_env(environ: Mapping[str, str] | None = None) -> BrokerConfig:
    env = os.environ if environ is None else environ
    return BrokerConfig(
        queue=_required(env, "BROKER_QUEUE"),
        exchange=env.get("BROKER_EXCHANGE", "sda").strip() or "sda",
        routing_key=_required(env, "BROKER_ROUTINGKEY"),
        routing_error=env.get("BROKER_ROUTINGERROR", "error").strip() or "error",
        durable=_as_bool(env.get("BROKER_DURABLE", "true")),
        poll_interval_s=_env_float(env, "BROKER_POLL_INTERVAL_S", default=0.5, minimum=0.01),
        watch_interval_s=_env_float(env, "BROKER_WATCH_INTERVAL_S", default=5.0, minimum=0.1),
    )


def load_config(service: str, environ: Mapping[str, str] | None = None) -> WorkerConfig:
    """Read the configuration for ``service`` ("sync" or "verify") from the environment."""
    env = os.environ if environ is None else environ
    if service not in SERVICES:
        raise ConfigError(f"unknown service: {service}")
    broker = broker_config_from_env(env)
    archive = _validate_storage("ARCHIVE", storage_config_from_env("ARCHIVE", env))
    if service == "sync":
        backup = _validate_storage("BACKUP", storage_config_from_env("BACKUP", env))
        return WorkerConfig(service=service, broker=broker, archive=archive, backup=backup)
    c4gh = C4GHConfig(
        key_path=_required(env, "C4GH_FILEPATH"),
        passphrase=env.get("C4GH_PASSPHRASE", ""),
    )
    return WorkerConfig(service=service, broker=broker, archive=archive, c4gh=c4gh)
