"""Bridge configuration.

``BridgeConfig`` holds the tunables of the bridge. ``load_config`` reads
~/.taskbridge/defaults.toml (global) and taskbridge.toml (project), merges
them, and builds a ``BridgeConfig`` from the ``[bridge]`` table.
"""

from __future__ import annotations

import dataclasses
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, TypeAlias

from taskbridge.core.exceptions import ConfigurationError

RawConfig: TypeAlias = dict[str, Any]
NotificationMode: TypeAlias = Literal["request", "push"]

GLOBAL_CONFIG_PATH = Path.home() / ".taskbridge" / "defaults.toml"
PROJECT_CONFIG_NAME = "taskbridge.toml"

POOL_MAX_SIZE = 512
RETRY_COOLDOWN = 0.001


@dataclass(frozen=True, slots=True)
class BridgeConfig:
    """Tunables for a task bridge.

    Attributes:
        mode: "request" sends each awaited task id over a pooled connection and
            waits for READY; "push" keeps one watcher connection per host and
            wakes per-task queues.
        host: Loopback address the notification server binds to.
        port: Port to bind. 0 picks a free port.
        pool_capacity: Max pooled connections (or wake queues) per host.
        retry_cooldown: Seconds to pause on the host after a transport failure.
        validate_idle: Pooled connections idle at least this long are PINGed
            before reuse. The default 0 validates on every checkout.
        id_bits: Width of the task id space.
        registry_shards: Number of lock stripes in the task registry.
        worker_threads: Executor threads for blocking operations. None lets
            ThreadPoolExecutor decide.
        startup_timeout: Seconds to wait for the worker runtime and the
            notification server to come up.
        reconnect_attempts: Connection attempts per watcher reconnect cycle.
        reconnect_max_delay: Backoff cap between watcher reconnect attempts.
    """

    mode: NotificationMode = "request"
    host: str = "127.0.0.1"
    port: int = 0
    pool_capacity: int = POOL_MAX_SIZE
    retry_cooldown: float = RETRY_COOLDOWN
    validate_idle: float = 0.0
    id_bits: int = 32
    registry_shards: int = 16
    worker_threads: int | None = None
    startup_timeout: float = 10.0
    reconnect_attempts: int = 10
    reconnect_max_delay: float = 1.0

    def __post_init__(self) -> None:
        if self.mode not in ("request", "push"):
            raise ConfigurationError(f"Unknown mode '{self.mode}'. Valid: request, push")
        if not 0 <= self.port <= 65535:
            raise ConfigurationError(f"Invalid port {self.port}")
        if self.pool_capacity < 0:
            raise ConfigurationError("pool_capacity must be >= 0")
        if self.retry_cooldown < 0 or self.validate_idle < 0:
            raise ConfigurationError("retry_cooldown and validate_idle must be >= 0")
        if not 2 <= self.id_bits <= 64:
            raise ConfigurationError("id_bits must be between 2 and 64")
        if self.registry_shards < 1:
            raise ConfigurationError("registry_shards must be >= 1")
        if self.worker_threads is not None and self.worker_threads < 1:
            raise ConfigurationError("worker_threads must be >= 1")
        if self.reconnect_attempts < 1:
            raise ConfigurationError("reconnect_attempts must be >= 1")


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    with path.open("rb") as f:
        return tomllib.load(f)


def load_raw_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("bridge", {})
    return merged


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> BridgeConfig:
    raw = load_raw_config(project_dir=project_dir, global_path=global_path)["bridge"]

    valid = {f.name for f in dataclasses.fields(BridgeConfig)}
    unknown = sorted(set(raw) - valid)
    if unknown:
        raise ConfigurationError(
            f"Unknown bridge setting(s): {', '.join(unknown)}. Valid: {', '.join(sorted(valid))}"
        )
    return BridgeConfig(**raw)
