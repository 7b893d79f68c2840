"""Main entry point for the NLB operator.

Wires the pieces together:
- Config and provider credentials from the environment
- Kubernetes client (in-cluster, falling back to the local kubeconfig)
- Provider Client over the NLB SDK client
- Convergence controller driven by the dispatcher until SIGTERM/SIGINT
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from kubernetes import config as kube_config
from kubernetes.client import CoreV1Api, CustomObjectsApi

from .audit import OPERATOR_VERSION
from .config import Config, ConfigurationError
from .dispatcher import Dispatcher
from .events import KubernetesEventRecorder
from .models import NLB_KIND, register_kinds
from .provider import NLBClient, create_sdk_client
from .reconciler import NLBReconciler
from .security import CredentialError, load_credential
from .store import KubernetesResourceStore

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


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # Reduce noise from client libraries
    logging.getLogger("alibabacloud_credentials").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("kubernetes").setLevel(logging.WARNING)


def load_kubernetes_config(logger: logging.Logger) -> None:
    try:
        kube_config.load_incluster_config()
    except kube_config.ConfigException:
        logger.warning("Failed to load in-cluster config, trying local kubeconfig")
        kube_config.load_kube_config()


async def main(config: Config | None = None) -> int:
    """Run the operator.

    Args:
        config: Pre-built configuration (CLI overrides); read from the
            environment when None.

    Returns:
        Exit code (0 for success, 1 configuration error, 2 credential error).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    if config is None:
        try:
            config = Config.from_env()
        except ConfigurationError as e:
            logger.error("Configuration error", extra={"error": str(e)})
            return 1

    try:
        credential = load_credential()
    except CredentialError as e:
        logger.critical("Credential error", extra={"error": str(e)})
        return 2

    kinds = register_kinds(NLB_KIND)

    try:
        load_kubernetes_config(logger)
    except kube_config.ConfigException as e:
        logger.error("Kubernetes configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting NLB operator",
        extra={
            "version": OPERATOR_VERSION,
            "region_id": config.region_id,
            "endpoint": config.resolved_endpoint,
            "namespace": config.namespace or "*",
        },
    )

    sdk_client = create_sdk_client(config, credential)
    cancel_event = asyncio.Event()
    store = KubernetesResourceStore(CustomObjectsApi(), kinds[NLB_KIND.kind], config.namespace)
    reconciler = NLBReconciler(
        provider=NLBClient(sdk_client, config, cancel_event),
        store=store,
        recorder=KubernetesEventRecorder(CoreV1Api()),
        config=config,
    )
    dispatcher = Dispatcher(reconciler, store, config, source=store, cancel_event=cancel_event)

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        dispatcher.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await dispatcher.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
