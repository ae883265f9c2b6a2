from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace:  Namespace to watch, or ``None`` for every namespace.
        workers:    Reconciliation worker threads.
        requeue_seconds: Resync interval after a successful apply.
        error_backoff_seconds: Delay before retrying any failed attempt.
        conflict_retries: Re-read/retry rounds for a conflicting finalizer patch.
        shutdown_grace_seconds: Upper bound on draining in-flight work at shutdown.
        field_manager: Server-side apply field manager for status patches.
        reporter:   Reporting component recorded on lifecycle events.
        health_port: Port for the health/metrics HTTP server.
        log_level:  Root logger level name.
    """

    namespace: str | None = None
    workers: int = 4
    requeue_seconds: int = 60
    error_backoff_seconds: int = 10
    conflict_retries: int = 3
    shutdown_grace_seconds: int = 30
    field_manager: str = "myworkload-controller"
    reporter: str = "myworkload-controller"
    health_port: int = 8080
    log_level: str = "INFO"


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_str(values: Mapping[str, str], name: str, default: str) -> str:
    value = values.get(name, default).strip()
    if not value:
        raise ConfigError(f"{name} must be a non-empty string")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``        (all namespaces when unset or empty)
        ``WORKERS``                (``4``)
        ``REQUEUE_SECONDS``        (``60``)
        ``ERROR_BACKOFF_SECONDS``  (``10``)
        ``CONFLICT_RETRIES``       (``3``)
        ``SHUTDOWN_GRACE_SECONDS`` (``30``)
        ``FIELD_MANAGER`` / ``REPORTER`` (``myworkload-controller``)
        ``HEALTH_PORT``            (``8080``)
        ``LOG_LEVEL``              (``INFO``)
    """
    values = env if env is not None else os.environ

    namespace = values.get("WATCH_NAMESPACE", "").strip() or None

    return ControllerConfig(
        namespace=namespace,
        workers=env_int(values, "WORKERS", 4, minimum=1),
        requeue_seconds=env_int(values, "REQUEUE_SECONDS", 60, minimum=1),
        error_backoff_seconds=env_int(values, "ERROR_BACKOFF_SECONDS", 10, minimum=1),
        conflict_retries=env_int(values, "CONFLICT_RETRIES", 3, minimum=0),
        shutdown_grace_seconds=env_int(values, "SHUTDOWN_GRACE_SECONDS", 30, minimum=1),
        field_manager=env_str(values, "FIELD_MANAGER", "myworkload-controller"),
        reporter=env_str(values, "REPORTER", "myworkload-controller"),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        log_level=values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
