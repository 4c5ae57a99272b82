"""Main entry point for the EKS identity provider operator."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from botocore.exceptions import BotoCoreError

from .config import Config, ConfigurationError
from .reconciler import Reconciler

# LogRecord attributes that are not user-supplied ``extra`` fields
_RESERVED_RECORD_ATTRS = frozenset(
    {
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
    }
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

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the AWS SDK
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def main(config: Config | None = None, log_level: int = logging.INFO) -> int:
    """Run the operator.

    Args:
        config: Operator configuration; loaded from the environment when omitted.
        log_level: Root logging level.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging(log_level)
    logger = logging.getLogger(__name__)

    if config is None:
        try:
            config = Config.from_env()
        except ConfigurationError as e:
            logger.error("Configuration error", extra={"error": str(e)})
            return 1

    logger.info(
        "Starting EKS identity provider operator",
        extra={
            "region": config.region,
            "specs_dir": str(config.specs_dir),
            "dry_run": config.dry_run,
        },
    )

    try:
        reconciler = Reconciler(config)
    except BotoCoreError as e:
        logger.error(
            "Failed to create EKS client",
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
        await reconciler.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
