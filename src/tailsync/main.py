"""Main entry point for the tailsync controller.

CREDENTIAL POLICY:
The controller only reads the device list of one tailnet:
- Authentication uses a Tailscale OAuth client limited to ``devices:core:read``
- API keys are refused at startup (exit code 2)
- Secrets are never logged
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .cluster import ClusterAccessDeniedError, ClusterError, KubernetesClusterClient
from .config import Config, ConfigurationError, LogFormat
from .controller import Controller
from .httpserver import HTTPServerError
from .inventory import TailscaleInventory
from .logcontext import get_logger
from .security import UnsupportedCredentialError, parse_oauth_client_key
from .triggers.poll import RetryBudgetExhaustedError

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CREDENTIAL_POLICY = 2

# Attributes every LogRecord has; anything else came in through ``extra``
_RECORD_ATTRIBUTES = frozenset(
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

_NOISY_LOGGERS = ("kubernetes", "urllib3", "httpx", "httpcore", "uvicorn.access")


def _extra_fields(record: logging.LogRecord) -> dict[str, object]:
    return {
        key: value for key, value in record.__dict__.items() if key not in _RECORD_ATTRIBUTES
    }


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        log_data.update(_extra_fields(record))

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable single-line format with ``key=value`` context."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-8s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = _extra_fields(record)
        if fields:
            line += " " + " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
        return line


def setup_logging(level: str = "INFO", log_format: LogFormat = LogFormat.JSON) -> None:
    """Configure the root logger once for the whole process."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if log_format is LogFormat.JSON else ConsoleFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # Reduce noise from client libraries
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


async def run_controller(config: Config) -> int:
    """Run the controller with the given configuration.

    Returns:
        Exit code: 0 on clean shutdown, 1 on fatal error, 2 on credential policy violation.
    """
    logger = get_logger(__name__)

    try:
        credentials = parse_oauth_client_key(config.auth_key)
    except UnsupportedCredentialError as e:
        logger.critical(
            "Credential policy violation: refusing to start",
            extra={"error": str(e)},
        )
        return EXIT_CREDENTIAL_POLICY

    try:
        cluster = KubernetesClusterClient.from_environment(
            timeout_seconds=config.request_timeout_seconds
        )
    except ClusterError as e:
        logger.error("Failed to configure Kubernetes client", extra={"error": str(e)})
        return EXIT_FAILURE

    async with TailscaleInventory(
        config.base_url,
        config.tailnet,
        credentials,
        timeout_seconds=config.request_timeout_seconds,
    ) as inventory:
        controller = Controller(config, inventory, cluster, logger)

        # Set up signal handlers for graceful shutdown
        loop = asyncio.get_running_loop()

        def signal_handler(sig: signal.Signals) -> None:
            logger.info("Received signal", extra={"signal": sig.name})
            controller.shutdown()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

        try:
            await controller.run()
        except RetryBudgetExhaustedError as e:
            logger.critical("Stopping after repeated synchronization failures", extra={"error": str(e)})
            return EXIT_FAILURE
        except ClusterAccessDeniedError as e:
            logger.critical(
                "Access to the cluster was denied, check the controller's RBAC",
                extra={"error": str(e)},
            )
            return EXIT_FAILURE
        except HTTPServerError as e:
            logger.error("HTTP server failed", extra={"error": str(e)})
            return EXIT_FAILURE
        except Exception as e:
            logger.exception("Unhandled exception", extra={"error": str(e)})
            return EXIT_FAILURE
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)

    logger.info("Controller stopped")
    return EXIT_OK


async def main() -> int:
    """Load the configuration from the environment and run the controller."""
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILURE

    setup_logging(config.log_level, config.log_format)
    return await run_controller(config)


def run() -> None:
    """Entry point for running the controller from the environment."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
