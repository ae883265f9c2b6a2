from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from workload_controller.src.config import load_config
from workload_controller.src.controller import build_controller_from_config
from workload_controller.src.errors import StoreError
from workload_controller.src.health import start_health_server
from workload_controller.src.kube import build_clients, load_kube_configuration
from workload_controller.src.metrics import METRICS
from workload_controller.src.resource import KIND, PLURAL

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
)

LOGGER = logging.getLogger(__name__)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level, logging.INFO))


def main() -> None:
    """Controller entrypoint: configure logging, check the CRD, and run the control loop."""
    config = load_config()
    configure_logging(config.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    custom_api, core_api = build_clients()
    controller = build_controller_from_config(config, custom_api=custom_api, core_api=core_api)

    try:
        controller.ensure_queryable()
    except StoreError as exc:
        LOGGER.error("%s CRD is not queryable; %s. Is the CRD installed?", KIND, exc)
        LOGGER.info("Installation: kubectl apply -f deploy/crd.yaml (resource %s)", PLURAL)
        sys.exit(1)

    health_server = start_health_server(
        ready=controller.ready,
        port=config.health_port,
        diagnostics=controller.context.diagnostics,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        controller.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        controller.run_forever(shutdown_event=shutdown_event)
    finally:
        health_server.shutdown()
    LOGGER.info("Controller stopped")


if __name__ == "__main__":
    main()
