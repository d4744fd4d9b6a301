"""Main entry point for the stackcd controller.

Startup order:
1. Settings from the environment (fatal if invalid)
2. Revision ledger (fatal if the storage location is unusable)
3. Configuration snapshot (fatal if invalid at startup, tolerated on reload)
4. Scheduler loop until SIGTERM/SIGINT
"""

from __future__ import annotations

import json
import logging
import signal
import sys
from datetime import UTC, datetime
from types import FrameType

from .config import ConfigurationError, Settings
from .config_loader import ConfigLoadError
from .context import ControllerContext
from .ledger import StorageInitializationError, open_ledger
from .scheduler import Scheduler

# LogRecord attributes that are not user-supplied extras
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
            "thread": record.threadName,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO, fmt: str = "json") -> None:
    """Configure root logging with a single stdout handler."""
    handler = logging.StreamHandler(sys.stdout)
    if fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s")
        )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)


def main() -> int:
    """Run the controller.

    Returns:
        Exit code (0 for clean shutdown, 1 for startup failure).
    """
    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(settings.log_level_value, settings.log_format)
    logger = logging.getLogger(__name__)

    logger.info(
        "Starting stackcd",
        extra={"configs_path": str(settings.configs_path), "db_path": settings.db_path},
    )

    try:
        ledger = open_ledger(settings.db_path)
    except StorageInitializationError as e:
        logger.critical(
            "Failed to initialize revision ledger",
            extra={"error": str(e), "db_path": settings.db_path},
        )
        return 1

    try:
        context = ControllerContext.from_settings(settings, ledger)
        try:
            context.load()
        except ConfigLoadError as e:
            logger.critical("Failed to load configuration", extra={"error": str(e)})
            return 1

        scheduler = Scheduler(context)

        def signal_handler(signum: int, frame: FrameType | None) -> None:
            logger.info("Received signal", extra={"signal": signal.Signals(signum).name})
            scheduler.shutdown()

        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, signal_handler)

        try:
            scheduler.run()
        except Exception as e:
            logger.exception("Unhandled exception", extra={"error": str(e)})
            return 1
    finally:
        ledger.close()

    logger.info("Controller stopped")
    return 0


def run() -> None:
    """Entry point for the controller process."""
    sys.exit(main())


if __name__ == "__main__":
    run()
