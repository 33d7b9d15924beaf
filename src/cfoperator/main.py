"""Main entry point for the cf-operator controllers.

Runs the task and security-group controllers against one store:
- memory: the in-memory store, optionally seeded from MANIFESTS_DIR
- kubernetes: the API server (in-cluster config, else kubeconfig)
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import UTC

from .config import Config, ConfigurationError, LogFormat, StoreBackend
from .env import AppEnvBuilder
from .events import LoggingEventRecorder
from .kube_store import KubernetesStore
from .manifests import ManifestLoadError, load_manifests, seed_store
from .models import TaskWorkload
from .reconcile import ReconcileContextFilter
from .scheduler import Controller, Manager
from .security_groups import new_security_group_reconciler
from .store import InMemoryStore, ResourceStore, StoreError
from .tasks import new_task_reconciler

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
        import json
        from datetime import datetime

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


def setup_logging(log_format: LogFormat = LogFormat.JSON, level: str = "INFO") -> None:
    """Configure structured logging on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    if log_format == LogFormat.JSON:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    handler.addFilter(ReconcileContextFilter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the Kubernetes client
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_manager(config: Config, store: ResourceStore) -> Manager:
    """Wire both controllers to ``store``."""
    recorder = LoggingEventRecorder(component="cf-operator")

    task_reconciler = new_task_reconciler(
        store,
        recorder,
        AppEnvBuilder(store),
        config.task_ttl_seconds,
        default_memory_mb=config.cftask_default_memory_mb,
        default_disk_quota_mb=config.cftask_default_disk_quota_mb,
    )
    security_group_reconciler = new_security_group_reconciler(store)

    manager = Manager()
    manager.add(
        Controller(
            store,
            task_reconciler,
            workers=config.workers,
            backoff_base=config.retry_backoff_base_seconds,
            backoff_max=config.retry_backoff_max_seconds,
        ).owns(TaskWorkload)
    )
    manager.add(
        Controller(
            store,
            security_group_reconciler,
            workers=config.workers,
            backoff_base=config.retry_backoff_base_seconds,
            backoff_max=config.retry_backoff_max_seconds,
        )
    )
    return manager


async def create_store(config: Config) -> ResourceStore:
    """Create the configured store, seeding the memory store from manifests.

    Raises:
        ManifestLoadError: If a manifest is invalid.
        StoreError: If the Kubernetes configuration cannot be loaded.
    """
    if config.store_backend == StoreBackend.KUBERNETES:
        return KubernetesStore.from_environment(timeout=config.store_timeout_seconds)

    store = InMemoryStore()
    if config.manifests_dir is not None:
        records = load_manifests(config.manifests_dir)
        created = await seed_store(store, records)
        logging.getLogger(__name__).info(
            "Seeded in-memory store",
            extra={"manifests_dir": str(config.manifests_dir), "records": created},
        )
    return store


async def main() -> int:
    """Run the operator.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(config.log_format, config.log_level)
    logger = logging.getLogger(__name__)

    logger.info(
        "Starting cf-operator",
        extra={
            "store_backend": config.store_backend.value,
            "workers": config.workers,
            "task_ttl_seconds": config.task_ttl_seconds,
        },
    )

    try:
        store = await create_store(config)
    except ManifestLoadError as e:
        logger.error("Failed to load manifests", extra={"error": str(e)})
        return 1
    except StoreError as e:
        logger.error("Failed to create store", extra={"error": str(e)})
        return 1

    manager = build_manager(config, store)

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        manager.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await manager.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1
    finally:
        if isinstance(store, KubernetesStore):
            store.close()

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
