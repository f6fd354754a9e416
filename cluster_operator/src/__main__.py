from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from prometheus_client import start_http_server

from cluster_operator.src.config import load_operator_config
from cluster_operator.src.controller import build_controller
from cluster_operator.src.kube import build_clients, load_kube_configuration
from cluster_operator.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|cookie|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)(amqps?://[^:/\s]+:)([^@\s]+)(@)"),
        r"\1[REDACTED]\3",
    ),
)


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


def configure_logging(level_name: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))


def main() -> None:
    """Operator entrypoint: configure logging, serve metrics, and run the watch loop."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    operator_config = load_operator_config()
    start_http_server(operator_config.metrics_port)

    load_kube_configuration()
    controller = build_controller(build_clients(), operator_config)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        controller.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    controller.run_forever(shutdown_event=shutdown_event)
    logging.getLogger(__name__).info("Operator stopped")


if __name__ == "__main__":
    main()
