from __future__ import annotations

import functools
import json
import logging
import os
import re
import signal
import threading
from typing import Any

from curlmethat.src.config import ControllerSettings, load_settings
from curlmethat.src.fetcher import PageFetcher, build_http_client
from curlmethat.src.health import start_health_server
from curlmethat.src.kube import build_core_api, load_kube_configuration
from curlmethat.src.metrics import METRICS
from curlmethat.src.reconciler import Reconciler, run_reconcile_loop
from curlmethat.src.watch import ConfigMapWatchSource

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


def _redact_field(value: Any) -> Any:
    if isinstance(value, str):
        return redact_sensitive_text(value)
    if isinstance(value, dict):
        return {str(k): _redact_field(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_redact_field(v) for v in value]
    return value


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation.

    Structured context passed as ``extra={"fields": {...}}`` is merged into
    the top level of the entry (``namespace``, ``name``, ``data``...).
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            for key, value in fields.items():
                log_entry.setdefault(str(key), _redact_field(value))
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry, default=str)


def configure_logging() -> None:
    """Configure structured JSON logging with a level from ``LOG_LEVEL`` env var."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def install_shutdown_handlers(source: ConfigMapWatchSource) -> threading.Event:
    """Stop *source* exactly once when SIGINT or SIGTERM arrives.

    The signal handler only sets a one-shot event; a daemon waiter thread
    blocks on it and calls ``stop_watching``, keeping lock-taking code out of
    signal context.  Returns the event so callers can tell a requested
    shutdown from a watch that ended on its own.
    """
    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    def _stop_on_shutdown() -> None:
        shutdown_event.wait()
        source.stop_watching()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    threading.Thread(target=_stop_on_shutdown, name="shutdown-waiter", daemon=True).start()
    return shutdown_event


def build_reconciler(
    settings: ControllerSettings,
    source: ConfigMapWatchSource,
    http_client: Any,
) -> Reconciler:
    fetcher_factory = functools.partial(
        PageFetcher.from_string,
        client=http_client,
        max_workers=settings.fetch_max_workers,
        max_bytes=settings.fetch_max_bytes,
    )
    return Reconciler(updater=source, fetcher_factory=fetcher_factory)


def main() -> None:
    """Controller entrypoint: load credentials, watch ConfigMaps and curl annotated URLs."""
    configure_logging()
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        settings = load_settings()
        load_kube_configuration(settings.kubeconfig)
        core_api = build_core_api()
        source = ConfigMapWatchSource(
            core_api,
            namespace=settings.namespace,
            label_selector=settings.label_selector,
            watch_timeout_seconds=settings.watch_timeout_seconds,
        )
        snapshots = source.start_watching()
    except Exception as exc:
        logger.critical("Controller startup failed", exc_info=True)
        raise SystemExit(1) from exc

    health_server = (
        start_health_server(ready=source.ready, port=settings.health_port)
        if settings.health_enabled
        else None
    )
    shutdown_event = install_shutdown_handlers(source)
    http_client = build_http_client(timeout_seconds=settings.fetch_timeout_seconds)

    try:
        processed = run_reconcile_loop(snapshots, build_reconciler(settings, source, http_client))
    finally:
        http_client.close()
        if health_server is not None:
            health_server.shutdown()

    if not shutdown_event.is_set():
        logger.error("ConfigMap watch ended without a stop signal; terminating process")
        raise SystemExit(1)
    logger.info("Controller stopped after %d reconciliation(s)", processed)


if __name__ == "__main__":
    main()
