from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerSettings:
    """Immutable controller configuration loaded at startup.

    Attributes:
        kubeconfig: Path to a kubeconfig file, or ``None`` to prefer the
                    in-cluster service account.
        namespace:  Namespace to watch, or ``None`` for all namespaces.
        label_selector: Optional label selector narrowing the watch.
        watch_timeout_seconds: Server-side watch timeout; also bounds how long
                    shutdown waits for the open stream to return.
        fetch_timeout_seconds: Per-URL HTTP timeout.
        fetch_max_workers: Upper bound on concurrent fetches per ConfigMap.
        fetch_max_bytes: Largest response body accepted for a single key.
    """

    kubeconfig: str | None = None
    namespace: str | None = None
    label_selector: str | None = None
    watch_timeout_seconds: int = 30
    fetch_timeout_seconds: int = 10
    fetch_max_workers: int = 8
    fetch_max_bytes: int = 1024 * 1024
    health_enabled: bool = True
    health_port: int = 8080


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None or not raw.strip():
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


def _optional_str(values: Mapping[str, str], name: str) -> str | None:
    raw = values.get(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip()


def load_settings(env: Mapping[str, str] | None = None) -> ControllerSettings:
    """Load controller settings from the environment.

    Unset or blank variables fall back to the defaults of
    :class:`ControllerSettings`.  Out-of-range integers raise
    :class:`ConfigError` so a misconfigured pod fails at startup instead of
    running with surprising limits.
    """
    values = env if env is not None else os.environ

    return ControllerSettings(
        kubeconfig=_optional_str(values, "KUBECONFIG"),
        namespace=_optional_str(values, "WATCH_NAMESPACE"),
        label_selector=_optional_str(values, "WATCH_LABEL_SELECTOR"),
        watch_timeout_seconds=env_int(values, "WATCH_TIMEOUT_SECONDS", 30, minimum=1),
        fetch_timeout_seconds=env_int(values, "FETCH_TIMEOUT_SECONDS", 10, minimum=1),
        fetch_max_workers=env_int(values, "FETCH_MAX_WORKERS", 8, minimum=1, maximum=64),
        fetch_max_bytes=env_int(values, "FETCH_MAX_BYTES", 1024 * 1024, minimum=1),
        health_enabled=parse_bool(values.get("HEALTH_ENABLED"), default=True),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
    )
