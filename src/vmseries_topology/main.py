"""Main entry point for the VM-Series topology controller.

Runs reconciliation passes on an interval until SIGTERM/SIGINT. The provider
adapter is plugged in by import path (PROVIDER=module:attribute); credentials
and SDK clients are entirely the adapter's concern.

Exit codes:
    0: clean shutdown
    1: startup or unexpected failure
    2: configuration error
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import UTC

from .config import Config, ConfigurationError
from .provider import ProviderLoadError, load_provider
from .reconciler import Reconciler
from .state_store import StateStore


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    import json
    from datetime import datetime

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
            if hasattr(record, "__dict__"):
                for key, value in record.__dict__.items():
                    if key not in (
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
                    ):
                        log_data[key] = value

            # Add exception info if present
            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    logging.getLogger("asyncio").setLevel(logging.WARNING)


async def main() -> int:
    """Run the controller.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 2

    if config.provider is None:
        logger.error("Configuration error", extra={"error": "PROVIDER is required"})
        return 2

    try:
        provider = load_provider(config.provider)
    except ProviderLoadError as e:
        logger.error("Failed to load provider", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting VM-Series topology controller",
        extra={
            "topology_file": str(config.topology_file),
            "state_dir": str(config.state_dir),
            "provider": provider.name,
            "parallelism": config.parallelism,
            "drift_policy": config.drift_policy.value,
        },
    )

    reconciler = Reconciler(config, provider, StateStore(config.state_dir))

    # Set up signal handlers for graceful shutdown
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
    finally:
        await provider.close()

    logger.info("Controller stopped")
    return 0


def run() -> None:
    """Entry point for the controller process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
