"""Main entry point for the drift analysis worker.

SECRETLESS ARCHITECTURE:
The worker authenticates with a Managed Identity only. Credential
environment variables abort startup, and connection strings are accepted
for local emulators only.

Exit codes:
    0  clean shutdown (SIGTERM/SIGINT)
    1  configuration or startup error
    2  security violation (credentials in the environment)
    3  fatal analysis error (contract violation, unexpected error)
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from azure.core.credentials_async import AsyncTokenCredential
from azure.core.exceptions import AzureError

from .classifier import ClassifierConfig
from .config import (
    MAX_GRAPH_QUERY_TIMEOUT_SECONDS,
    Config,
    ConfigurationError,
    NotifierType,
    QueueBackendType,
    RepositoryBackendType,
)
from .consumer import MessageConsumer
from .diff_engine import ResourceDiffEngine
from .diff_normalizer import DiffNormalizer, NormalizationConfig, NormalizationError
from .errors import DriftWatchError, FatalError
from .iac_source import PIPELINE_REGISTRY_FILENAME, FileDefinitionSource, load_pipeline_registry
from .ignore_rules import IgnoreRulesConfig, IgnoreRulesEvaluator
from .notifier import LoggingNotifier, SafeNotifier, WebhookNotifier
from .orchestrator import AnalysisOrchestrator
from .ports import AnalysisRepository
from .queue_backend import create_queue_backend
from .repository import InMemoryRepository
from .resource_reader import ResourceGraphReader
from .security import (
    SecretlessViolationError,
    enforce_secretless_architecture,
    get_async_managed_identity_credential,
    get_managed_identity_credential,
)
from .table_repository import TableStorageRepository

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_SECURITY_VIOLATION = 2
EXIT_FATAL = 3

_RESERVED_RECORD_ATTRS = frozenset(
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

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("uamqp").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


def build_engine(report_unmanaged_resources: bool = False) -> ResourceDiffEngine:
    """Build the diff engine from the rule files named in the environment.

    Raises:
        ClassifierConfigurationError: If the classification rules are unusable.
        NormalizationError: If the normalization rules file is invalid.
    """
    classifier = ClassifierConfig.from_env().build()
    normalization = NormalizationConfig.from_env()
    return ResourceDiffEngine(
        classifier,
        normalizer=DiffNormalizer(
            rules=normalization.rules,
            enable_default_rules=normalization.enable_default_rules,
        ),
        ignore_rules=IgnoreRulesEvaluator(IgnoreRulesConfig.from_env()),
        report_unmanaged_resources=report_unmanaged_resources,
    )


@dataclass
class Worker:
    """Wired worker components and the resources to release on shutdown."""

    consumer: MessageConsumer
    orchestrator: AnalysisOrchestrator
    repository: AnalysisRepository
    notifier: SafeNotifier
    closers: list[Callable[[], Awaitable[None]]] = field(default_factory=list)

    async def close(self) -> None:
        await _close_all(self.closers)


async def _close_all(closers: list[Callable[[], Awaitable[None]]]) -> None:
    logger = logging.getLogger(__name__)
    for close in reversed(closers):
        try:
            await close()
        except (AzureError, OSError) as e:
            logger.warning("Error while closing worker resource", extra={"error": str(e)})


async def _build_repository(
    config: Config,
    get_credential: Callable[[], AsyncTokenCredential],
    closers: list[Callable[[], Awaitable[None]]],
) -> AnalysisRepository:
    logger = logging.getLogger(__name__)

    if config.repository_backend == RepositoryBackendType.TABLE:
        if config.table_connection_string:
            table = TableStorageRepository.from_connection_string(config.table_connection_string)
        else:
            table = TableStorageRepository.from_endpoint(
                config.table_endpoint or "",
                get_credential(),
            )
        closers.append(table.close)
        await table.open()
        return table

    memory = InMemoryRepository()
    registry = config.definitions_dir / PIPELINE_REGISTRY_FILENAME
    if registry.is_file():
        for pipeline in load_pipeline_registry(registry):
            await memory.save_pipeline(pipeline)
        logger.info(
            "Seeded in-memory store from pipeline registry",
            extra={"path": str(registry)},
        )
    else:
        logger.warning(
            "In-memory store without pipeline registry, every request will be not found",
            extra={"path": str(registry)},
        )
    return memory


def _build_notifier(config: Config) -> SafeNotifier:
    match config.notifier:
        case NotifierType.WEBHOOK:
            return SafeNotifier(WebhookNotifier(config.notify_webhook_url or ""))
        case _:
            return SafeNotifier(LoggingNotifier())


async def build_worker(config: Config, engine: ResourceDiffEngine) -> Worker:
    """Wire the worker from configuration.

    The asyncio credential is created lazily: emulator-only setups never
    need one.

    Raises:
        SecretlessViolationError: If credentials are present in the environment.
        DriftWatchError: If the store cannot be opened.
    """
    closers: list[Callable[[], Awaitable[None]]] = []
    async_credential: AsyncTokenCredential | None = None

    def get_async_credential() -> AsyncTokenCredential:
        nonlocal async_credential
        if async_credential is None:
            credential = get_async_managed_identity_credential(config.managed_identity_client_id)
            # Closed last, after the clients using it
            closers.insert(0, credential.close)
            async_credential = credential
        return async_credential

    try:
        repository = await _build_repository(config, get_async_credential, closers)

        notifier = _build_notifier(config)
        closers.append(notifier.close)

        orchestrator = AnalysisOrchestrator.from_config(
            config,
            definitions=FileDefinitionSource(config.definitions_dir),
            resources=ResourceGraphReader(
                get_managed_identity_credential(config.managed_identity_client_id),
                timeout_seconds=min(
                    config.collaborator_timeout_seconds, MAX_GRAPH_QUERY_TIMEOUT_SECONDS
                ),
            ),
            repository=repository,
            notifier=notifier,
            engine=engine,
        )

        needs_credential = (
            not config.servicebus_connection_string
            if config.queue_backend == QueueBackendType.SERVICE_BUS
            else not config.effective_storage_connection_string
        )
        backend = create_queue_backend(
            config, get_async_credential() if needs_credential else None
        )
    except BaseException:
        await _close_all(closers)
        raise

    consumer = MessageConsumer.from_config(config, backend, orchestrator, notifier)
    return Worker(
        consumer=consumer,
        orchestrator=orchestrator,
        repository=repository,
        notifier=notifier,
        closers=closers,
    )


async def run_worker(worker: Worker) -> int:
    """Run the consumer until a signal arrives or a fatal error stops it."""
    logger = logging.getLogger(__name__)

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        worker.consumer.stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await worker.consumer.run()
    except FatalError as e:
        logger.critical(
            "Fatal analysis error",
            extra={"error": e.message, "error_type": type(e).__name__},
        )
        return EXIT_FATAL
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return EXIT_FATAL
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
        await worker.close()

    logger.info(
        "Worker stopped",
        extra={
            "completed": worker.consumer.completed_count,
            "dead_lettered": len(worker.consumer.dead_lettered),
            "notification_failures": worker.notifier.failures,
        },
    )
    return EXIT_OK


async def main() -> int:
    """Run the worker.

    Returns:
        Exit code (see module docstring).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_ERROR

    try:
        enforce_secretless_architecture()
    except SecretlessViolationError as e:
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return EXIT_SECURITY_VIOLATION

    try:
        engine = build_engine(config.report_unmanaged_resources)
    except (FatalError, NormalizationError) as e:
        logger.error("Invalid rule configuration", extra={"error": str(e)})
        return EXIT_ERROR

    logger.info(
        "Starting drift analysis worker",
        extra={
            "queue_backend": config.queue_backend.value,
            "queue_name": config.queue_name,
            "repository_backend": config.repository_backend.value,
            "notifier": config.notifier.value,
            "classifier_version": engine.classifier.version,
            "max_concurrent_analyses": config.max_concurrent_analyses,
        },
    )

    try:
        worker = await build_worker(config, engine)
    except SecretlessViolationError as e:
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return EXIT_SECURITY_VIOLATION
    except (DriftWatchError, AzureError, OSError, ValueError) as e:
        logger.error(
            "Failed to initialize worker",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return EXIT_ERROR

    return await run_worker(worker)


def run() -> None:
    """Entry point for the worker process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
