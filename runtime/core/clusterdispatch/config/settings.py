"""Configuration loader for the driver scheduler.

Rules:
- Fail closed when config is missing or invalid.
- All relative paths in runtime.yaml are resolved relative to runtime.yaml's directory.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from clusterdispatch.errors import ConfigurationError


@dataclass(frozen=True)
class StorageConfig:
    driver: str  # blackhole|sqlite
    sqlite_path: Path
    sqlite_timeout_seconds: float


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int
    initial_backoff_seconds: float
    max_backoff_seconds: float


@dataclass(frozen=True)
class SchedulerConfig:
    instance_id: str
    max_queued_drivers: int
    retained_drivers: int
    poll_interval_seconds: float
    retry_loop_enabled: bool
    retry: RetryConfig


@dataclass(frozen=True)
class LaunchConfig:
    executable: str
    master: str


@dataclass(frozen=True)
class ValidationConfig:
    schemas_dir: Path


@dataclass(frozen=True)
class RuntimeConfig:
    storage: StorageConfig
    scheduler: SchedulerConfig
    launch: LaunchConfig
    validation: ValidationConfig
    config_dir: Path


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Missing required config file: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ConfigurationError(f"Invalid YAML root object in config file: {path}")
    return data


def _resolve_path(base_dir: Path, raw: str) -> Path:
    p = Path(raw)
    if p.is_absolute():
        return p
    return (base_dir / p).resolve()


def _positive(name: str, value: float) -> float:
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive (got {value})")
    return value


def parse_runtime_config(raw: dict[str, Any], cfg_dir: Path) -> RuntimeConfig:
    storage_raw = raw.get("storage") or {}
    scheduler_raw = raw.get("scheduler") or {}
    retry_raw = scheduler_raw.get("retry") or {}
    launch_raw = raw.get("launch") or {}
    validation_raw = raw.get("validation") or {}

    sqlite_raw = storage_raw.get("sqlite") or {}
    storage = StorageConfig(
        driver=str(storage_raw.get("driver", "sqlite")),
        sqlite_path=_resolve_path(cfg_dir, str(sqlite_raw.get("path", "../state/cluster_dispatch.sqlite"))),
        sqlite_timeout_seconds=_positive("storage.sqlite.timeout_seconds", float(sqlite_raw.get("timeout_seconds", 30))),
    )

    retry = RetryConfig(
        max_retries=int(retry_raw.get("max_retries", 10)),
        initial_backoff_seconds=_positive("scheduler.retry.initial_backoff_seconds", float(retry_raw.get("initial_backoff_seconds", 1))),
        max_backoff_seconds=_positive("scheduler.retry.max_backoff_seconds", float(retry_raw.get("max_backoff_seconds", 60))),
    )
    if retry.max_retries < 0:
        raise ConfigurationError(f"scheduler.retry.max_retries must not be negative (got {retry.max_retries})")

    scheduler = SchedulerConfig(
        instance_id=str(scheduler_raw.get("instance_id", "default")),
        max_queued_drivers=int(_positive("scheduler.max_queued_drivers", int(scheduler_raw.get("max_queued_drivers", 200)))),
        retained_drivers=int(_positive("scheduler.retained_drivers", int(scheduler_raw.get("retained_drivers", 200)))),
        poll_interval_seconds=_positive("scheduler.poll_interval_seconds", float(scheduler_raw.get("poll_interval_seconds", 1))),
        retry_loop_enabled=bool(scheduler_raw.get("retry_loop_enabled", True)),
        retry=retry,
    )

    launch = LaunchConfig(
        executable=str(launch_raw.get("executable", "./bin/spark-submit")),
        master=str(launch_raw.get("master", "mesos://localhost:5050")),
    )

    validation = ValidationConfig(
        schemas_dir=_resolve_path(cfg_dir, str(validation_raw.get("schemas_dir", "../../../schemas"))),
    )

    return RuntimeConfig(
        storage=storage,
        scheduler=scheduler,
        launch=launch,
        validation=validation,
        config_dir=cfg_dir,
    )


def load_runtime_config(runtime_config_path: Path) -> RuntimeConfig:
    cfg_dir = runtime_config_path.parent.resolve()
    return parse_runtime_config(_load_yaml(runtime_config_path), cfg_dir)


def load_logging_config(logging_config_path: Path) -> dict[str, Any]:
    return _load_yaml(logging_config_path)


def default_config_paths() -> tuple[Path, Path]:
    # Default to paths relative to the runtime working directory (runtime/core).
    runtime_path = Path.cwd() / "config" / "runtime.yaml"
    logging_path = Path.cwd() / "config" / "logging.yaml"
    return runtime_path, logging_path
