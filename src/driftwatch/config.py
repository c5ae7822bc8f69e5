"""Configuration management with validation.

Security constraints are enforced at configuration load time so the worker
runs in a secure mode by default: production queues and tables are reached
with managed identity, connection strings are only accepted for local
emulators.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class QueueBackendType(str, Enum):
    """Supported analysis request queues."""

    SERVICE_BUS = "servicebus"
    STORAGE_QUEUE = "storagequeue"


class RepositoryBackendType(str, Enum):
    """Supported scan/drift stores."""

    MEMORY = "memory"
    TABLE = "table"


class NotifierType(str, Enum):
    """Supported progress notification transports."""

    LOG = "log"
    WEBHOOK = "webhook"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_QUEUE_NAME = "drift-analysis-requests"
EMULATOR_STORAGE_CONNECTION_STRING = "UseDevelopmentStorage=true"

DEFAULT_MAX_CONCURRENT_ANALYSES = 2
MIN_CONCURRENT_ANALYSES = 1
MAX_CONCURRENT_ANALYSES = 32

DEFAULT_MAX_PARALLEL_PIPELINES = 1
MAX_PARALLEL_PIPELINES = 16

DEFAULT_LEASE_DURATION_SECONDS = 300
MIN_LEASE_DURATION_SECONDS = 30
MAX_LEASE_DURATION_SECONDS = 3600

DEFAULT_POLL_INTERVAL_SECONDS = 5
POLL_ERROR_BACKOFF_SECONDS = 10
DEFAULT_MAX_DELIVERY_COUNT = 3
DEFAULT_SHUTDOWN_GRACE_SECONDS = 30

DEFAULT_FETCH_MAX_ATTEMPTS = 3
MAX_FETCH_ATTEMPTS = 10
DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 2
DEFAULT_COLLABORATOR_TIMEOUT_SECONDS = 120

NOTIFY_TIMEOUT_SECONDS = 5

# Security constraints - enforced limits to prevent abuse
MAX_DEFINITION_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max definition file
MAX_GRAPH_QUERY_RESULTS = 1000
MAX_GRAPH_QUERY_TIMEOUT_SECONDS = 60

# Input validation patterns
VALID_QUEUE_NAME_PATTERN = r"^[a-z0-9](?!.*--)[a-z0-9-]{1,61}[a-z0-9]$"
VALID_PIPELINE_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$"
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_RESOURCE_GROUP_PATTERN = r"^[-\w._()]{1,90}$"

_EMULATOR_MARKERS = (
    "usedevelopmentstorage=true",
    "usedevelopmentemulator=true",
    "localhost",
    "127.0.0.1",
)


def is_emulator_connection_string(value: str) -> bool:
    """True if a connection string targets a local emulator (Azurite, Service Bus emulator)."""
    lowered = value.lower()
    return any(marker in lowered for marker in _EMULATOR_MARKERS)


@dataclass(frozen=True)
class Config:
    """Worker configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Queue
    queue_backend: QueueBackendType = QueueBackendType.STORAGE_QUEUE
    queue_name: str = DEFAULT_QUEUE_NAME
    servicebus_namespace: str | None = None
    servicebus_connection_string: str | None = None
    storage_account_url: str | None = None
    storage_connection_string: str | None = None

    # Store
    repository_backend: RepositoryBackendType = RepositoryBackendType.MEMORY
    table_endpoint: str | None = None
    table_connection_string: str | None = None

    # Definitions
    definitions_dir: Path = field(default_factory=lambda: Path("/definitions"))

    # Identity
    managed_identity_client_id: str | None = None

    # Concurrency and timing
    max_concurrent_analyses: int = DEFAULT_MAX_CONCURRENT_ANALYSES
    max_parallel_pipelines: int = DEFAULT_MAX_PARALLEL_PIPELINES
    lease_duration_seconds: int = DEFAULT_LEASE_DURATION_SECONDS
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    max_delivery_count: int = DEFAULT_MAX_DELIVERY_COUNT
    shutdown_grace_seconds: int = DEFAULT_SHUTDOWN_GRACE_SECONDS

    # Retry
    fetch_max_attempts: int = DEFAULT_FETCH_MAX_ATTEMPTS
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    collaborator_timeout_seconds: float = DEFAULT_COLLABORATOR_TIMEOUT_SECONDS

    # Notifications
    notifier: NotifierType = NotifierType.LOG
    notify_webhook_url: str | None = None

    # Behavior
    report_unmanaged_resources: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        SECURITY: All inputs are validated at the boundary (fail-fast).
        """
        import re

        errors: list[str] = []

        if not re.match(VALID_QUEUE_NAME_PATTERN, self.queue_name):
            errors.append(f"QUEUE_NAME must match pattern {VALID_QUEUE_NAME_PATTERN}: {self.queue_name}")

        # Queue backend validation
        match self.queue_backend:
            case QueueBackendType.SERVICE_BUS:
                if not self.servicebus_namespace and not self.servicebus_connection_string:
                    errors.append(
                        "SERVICEBUS_NAMESPACE is required when QUEUE_BACKEND is servicebus"
                    )
                if self.servicebus_connection_string and not is_emulator_connection_string(
                    self.servicebus_connection_string
                ):
                    errors.append(
                        "SERVICEBUS_CONNECTION_STRING is only allowed for the local emulator; "
                        "use SERVICEBUS_NAMESPACE with managed identity"
                    )
            case QueueBackendType.STORAGE_QUEUE:
                if self.storage_connection_string and not is_emulator_connection_string(
                    self.storage_connection_string
                ):
                    errors.append(
                        "STORAGE_CONNECTION_STRING is only allowed for the local emulator; "
                        "use STORAGE_ACCOUNT_URL with managed identity"
                    )
                if self.storage_account_url and not self.storage_account_url.startswith("https://"):
                    errors.append(f"STORAGE_ACCOUNT_URL must use https: {self.storage_account_url}")

        # Store validation
        if self.repository_backend == RepositoryBackendType.TABLE:
            if not self.table_endpoint and not self.table_connection_string:
                errors.append("TABLE_ENDPOINT is required when REPOSITORY_BACKEND is table")
            if self.table_connection_string and not is_emulator_connection_string(
                self.table_connection_string
            ):
                errors.append(
                    "TABLE_CONNECTION_STRING is only allowed for the local emulator; "
                    "use TABLE_ENDPOINT with managed identity"
                )

        # Concurrency and timing validation
        if not (MIN_CONCURRENT_ANALYSES <= self.max_concurrent_analyses <= MAX_CONCURRENT_ANALYSES):
            errors.append(
                f"MAX_CONCURRENT_ANALYSES must be between {MIN_CONCURRENT_ANALYSES} "
                f"and {MAX_CONCURRENT_ANALYSES}"
            )

        if not (1 <= self.max_parallel_pipelines <= MAX_PARALLEL_PIPELINES):
            errors.append(f"MAX_PARALLEL_PIPELINES must be between 1 and {MAX_PARALLEL_PIPELINES}")

        if not (
            MIN_LEASE_DURATION_SECONDS <= self.lease_duration_seconds <= MAX_LEASE_DURATION_SECONDS
        ):
            errors.append(
                f"LEASE_DURATION_SECONDS must be between {MIN_LEASE_DURATION_SECONDS} "
                f"and {MAX_LEASE_DURATION_SECONDS}"
            )

        if self.poll_interval_seconds < 1:
            errors.append("POLL_INTERVAL_SECONDS must be at least 1")

        if self.max_delivery_count < 1:
            errors.append("MAX_DELIVERY_COUNT must be at least 1")

        if self.shutdown_grace_seconds < 0:
            errors.append("SHUTDOWN_GRACE_SECONDS cannot be negative")

        if not (1 <= self.fetch_max_attempts <= MAX_FETCH_ATTEMPTS):
            errors.append(f"FETCH_MAX_ATTEMPTS must be between 1 and {MAX_FETCH_ATTEMPTS}")

        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE_SECONDS cannot be negative")

        if self.collaborator_timeout_seconds <= 0:
            errors.append("COLLABORATOR_TIMEOUT_SECONDS must be positive")

        # Notification validation
        if self.notifier == NotifierType.WEBHOOK:
            if not self.notify_webhook_url:
                errors.append("NOTIFY_WEBHOOK_URL is required when NOTIFIER is webhook")
            elif not (
                self.notify_webhook_url.startswith("https://")
                or is_emulator_connection_string(self.notify_webhook_url)
            ):
                errors.append(f"NOTIFY_WEBHOOK_URL must use https: {self.notify_webhook_url}")

        # Path validation
        if not self.definitions_dir.exists():
            errors.append(f"Definitions directory does not exist: {self.definitions_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def effective_storage_connection_string(self) -> str | None:
        """Connection string for the storage queue, defaulting to Azurite without an account URL."""
        if self.storage_connection_string:
            return self.storage_connection_string
        if not self.storage_account_url:
            return EMULATOR_STORAGE_CONNECTION_STRING
        return None

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            QUEUE_BACKEND: servicebus or storagequeue (default: storagequeue)
            QUEUE_NAME: Request queue name (default: drift-analysis-requests)
            SERVICEBUS_NAMESPACE: Fully qualified Service Bus namespace
            SERVICEBUS_CONNECTION_STRING: Service Bus emulator connection string
            STORAGE_ACCOUNT_URL: Storage queue endpoint (https)
            STORAGE_CONNECTION_STRING: Azurite connection string
            REPOSITORY_BACKEND: memory or table (default: memory)
            TABLE_ENDPOINT: Table Storage endpoint (https)
            TABLE_CONNECTION_STRING: Azurite table connection string
            DEFINITIONS_DIR: Path to IaC definitions (default: /definitions)
            AZURE_CLIENT_ID: Client ID of the user-assigned managed identity
            MAX_CONCURRENT_ANALYSES: In-flight messages (default: 2)
            MAX_PARALLEL_PIPELINES: Pipelines analysed concurrently per request (default: 1)
            LEASE_DURATION_SECONDS: Message lease / visibility timeout (default: 300)
            POLL_INTERVAL_SECONDS: Idle sleep of polling queues (default: 5)
            MAX_DELIVERY_COUNT: Deliveries before dead-lettering (default: 3)
            SHUTDOWN_GRACE_SECONDS: Grace period for in-flight work (default: 30)
            FETCH_MAX_ATTEMPTS: Attempts for transient failures (default: 3)
            RETRY_BACKOFF_BASE_SECONDS: Exponential backoff base (default: 2)
            COLLABORATOR_TIMEOUT_SECONDS: Per-call timeout (default: 120)
            NOTIFIER: log or webhook (default: log)
            NOTIFY_WEBHOOK_URL: Webhook relay URL
            REPORT_UNMANAGED_RESOURCES: Report resources absent from IaC (default: false)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_enum(key: str, enum_cls: type[Enum], default: Enum) -> Enum:
            value = os.environ.get(key)
            if not value:
                return default
            try:
                return enum_cls(value.lower())
            except ValueError as e:
                valid = [m.value for m in enum_cls]
                raise ConfigurationError(f"{key} must be one of {valid}: {value}") from e

        return cls(
            queue_backend=get_enum(  # type: ignore[arg-type]
                "QUEUE_BACKEND", QueueBackendType, QueueBackendType.STORAGE_QUEUE
            ),
            queue_name=os.environ.get("QUEUE_NAME", DEFAULT_QUEUE_NAME),
            servicebus_namespace=os.environ.get("SERVICEBUS_NAMESPACE") or None,
            servicebus_connection_string=os.environ.get("SERVICEBUS_CONNECTION_STRING") or None,
            storage_account_url=os.environ.get("STORAGE_ACCOUNT_URL") or None,
            storage_connection_string=os.environ.get("STORAGE_CONNECTION_STRING") or None,
            repository_backend=get_enum(  # type: ignore[arg-type]
                "REPOSITORY_BACKEND", RepositoryBackendType, RepositoryBackendType.MEMORY
            ),
            table_endpoint=os.environ.get("TABLE_ENDPOINT") or None,
            table_connection_string=os.environ.get("TABLE_CONNECTION_STRING") or None,
            definitions_dir=Path(os.environ.get("DEFINITIONS_DIR", "/definitions")),
            managed_identity_client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            max_concurrent_analyses=get_int(
                "MAX_CONCURRENT_ANALYSES", DEFAULT_MAX_CONCURRENT_ANALYSES
            ),
            max_parallel_pipelines=get_int("MAX_PARALLEL_PIPELINES", DEFAULT_MAX_PARALLEL_PIPELINES),
            lease_duration_seconds=get_int("LEASE_DURATION_SECONDS", DEFAULT_LEASE_DURATION_SECONDS),
            poll_interval_seconds=get_int("POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS),
            max_delivery_count=get_int("MAX_DELIVERY_COUNT", DEFAULT_MAX_DELIVERY_COUNT),
            shutdown_grace_seconds=get_int("SHUTDOWN_GRACE_SECONDS", DEFAULT_SHUTDOWN_GRACE_SECONDS),
            fetch_max_attempts=get_int("FETCH_MAX_ATTEMPTS", DEFAULT_FETCH_MAX_ATTEMPTS),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE_SECONDS", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            collaborator_timeout_seconds=get_float(
                "COLLABORATOR_TIMEOUT_SECONDS", DEFAULT_COLLABORATOR_TIMEOUT_SECONDS
            ),
            notifier=get_enum("NOTIFIER", NotifierType, NotifierType.LOG),  # type: ignore[arg-type]
            notify_webhook_url=os.environ.get("NOTIFY_WEBHOOK_URL") or None,
            report_unmanaged_resources=get_bool("REPORT_UNMANAGED_RESOURCES", False),
        )
