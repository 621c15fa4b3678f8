"""Main entry point for the provisioning reconciler in operator mode.

Runs the reconciliation loop against PROVISIONER_SPEC_FILE until SIGTERM
or SIGINT. Cloud credentials come from each SDK's default chain.

Exit codes:
    0: Clean shutdown
    1: Configuration or startup error
    2: Spec file invalid at startup
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TextIO

from .config import Config, ConfigurationError
from .diff import IgnoreRulesError
from .reconciler import Reconciler
from .spec_loader import SpecLoadError, load_spec
from .state_store import StateStoreError

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_LOG_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO, stream: TextIO | None = None) -> None:
    """Configure structured logging with JSON output (stdout by default)."""
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from cloud SDKs
    for name in ("azure", "botocore", "boto3", "urllib3", "google"):
        logging.getLogger(name).setLevel(logging.WARNING)


async def main() -> int:
    """Run the reconciler loop.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    if config.spec_file is None:
        logger.error("PROVISIONER_SPEC_FILE is required in operator mode")
        return 1

    # Fail fast on a broken spec; later edits are reloaded each cycle
    try:
        spec = load_spec(config.spec_file)
    except SpecLoadError as e:
        logger.error(
            "Spec loading failed",
            extra={"error": str(e), "spec_file": str(config.spec_file)},
        )
        return 2

    logger.info(
        "Starting provisioning reconciler",
        extra={
            "cluster": spec.cluster.name,
            "cloud": spec.cloud.value,
            "state_dir": str(config.state_dir),
            "max_workers": config.max_workers,
            "dry_run": config.dry_run,
        },
    )

    try:
        reconciler = Reconciler(config)
    except (IgnoreRulesError, StateStoreError) as e:
        logger.error(
            "Failed to initialize reconciler",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await reconciler.run(config.spec_file)
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Reconciler stopped")
    return 0


def run() -> None:
    """Entry point for operator mode."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
