"""Main entry point for the VM inventory controller.

Startup sequence:
1. Load and validate configuration from the environment
2. Wait for AWX and verify the organization (readiness gate)
3. Watch VirtualMachines and mirror them into AWX until SIGTERM/SIGINT

Exit codes: 0 on graceful shutdown, 1 on configuration, readiness or
unrecoverable watch errors.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .bootstrap import BootstrapError, bootstrap
from .config import Config, ConfigurationError
from .engine import ReconciliationEngine
from .gateway import AwxGateway, InventoryGateway
from .watcher import KubernetesWatcher, ResourceWatcher, WatchError

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_KEYS = frozenset(
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

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int | str = "INFO") -> None:
    """Configure structured logging with JSON output."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers[:] = [handler]
    root_logger.setLevel(level)

    # Reduce noise from client libraries
    for noisy in ("kubernetes", "urllib3", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def build_engine(
    config: Config, gateway: InventoryGateway, watcher: ResourceWatcher
) -> ReconciliationEngine:
    return ReconciliationEngine(
        gateway,
        watcher,
        organization=config.organization,
        inventory_prefix=config.inventory_prefix,
        namespace=config.namespace,
        reconnect_delay_seconds=config.reconnect_delay_seconds,
        group_label=config.group_label,
        resolve_on_delete=config.resolve_on_delete,
    )


def create_gateway(config: Config) -> AwxGateway:
    return AwxGateway(
        config.base_url,
        config.awx_token,
        timeout_seconds=config.request_timeout_seconds,
        verify_tls=config.verify_tls,
    )


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
        return 1

    logging.getLogger().setLevel(config.log_level)
    logger.info(
        "Starting VM inventory controller",
        extra={
            "awx_url": config.base_url,
            "organization": config.organization,
            "inventory_prefix": config.inventory_prefix,
            "namespace": config.namespace or "*",
        },
    )

    async with create_gateway(config) as gateway:
        try:
            await bootstrap(gateway, config)
        except BootstrapError as e:
            logger.error("Readiness gate failed", extra={"error": str(e)})
            return 1

        try:
            watcher = KubernetesWatcher.from_environment(
                timeout_seconds=config.watch_timeout_seconds
            )
        except WatchError as e:
            logger.error("Failed to create Kubernetes client", extra={"error": str(e)})
            return 1

        return await run_engine(build_engine(config, gateway, watcher), logger)


async def run_engine(engine: ReconciliationEngine, logger: logging.Logger) -> int:
    """Run the engine with signal-driven graceful shutdown."""
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal, shutting down...", extra={"signal": sig.name})
        engine.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        logger.info("Note: Watch will process all existing VMs as ADDED events on startup")
        await engine.run()
    except WatchError as e:
        logger.error("Watch failed", extra={"error": str(e)})
        return 1
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    logger.info("Controller stopped")
    return 0


def run() -> None:
    """Entry point for the controller process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
