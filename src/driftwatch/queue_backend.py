"""Queue backend abstraction.

Two backends deliver analysis requests with at-least-once semantics:

- Service Bus: durable broker, peek-lock leases, native dead-letter queue
- Storage Queue: polling queue, visibility-timeout leases, ``<queue>-poison``
  queue as dead-letter destination

Both expose the same lease model. A received message is invisible to other
workers until its lease expires; the holder completes it, abandons it
(immediately visible again), dead-letters it, or renews the lease while it
is still working.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from .errors import DriftWatchError

if TYPE_CHECKING:
    from azure.core.credentials_async import AsyncTokenCredential

    from .config import Config

DEAD_LETTER_MALFORMED = "MalformedMessage"
DEAD_LETTER_MAX_DELIVERY = "MaxDeliveryCountExceeded"


class LeaseLostError(DriftWatchError):
    """The lease of a message expired or was taken by another receiver."""

    pass


@dataclass
class ReceivedMessage:
    """A leased message, independent of the backend.

    Attributes:
        message_id: Broker message ID.
        body: Raw message body.
        delivery_count: How many times the message has been delivered, this time included.
        enqueued_at: When the message was enqueued, if known.
        handle: Backend-specific message object (receipt for lease operations).
    """

    message_id: str
    body: bytes
    delivery_count: int = 1
    enqueued_at: datetime | None = None
    handle: Any = field(default=None, repr=False)


class QueueBackend(Protocol):
    """Lease-based queue port used by the message consumer."""

    @property
    def lease_duration_seconds(self) -> float:
        ...

    @property
    def polling(self) -> bool:
        """True if receive() returns immediately and the caller must sleep when idle."""
        ...

    async def open(self) -> None:
        ...

    async def receive(self, max_messages: int, max_wait_seconds: float) -> list[ReceivedMessage]:
        ...

    async def complete(self, message: ReceivedMessage) -> None:
        ...

    async def abandon(self, message: ReceivedMessage) -> None:
        ...

    async def dead_letter(self, message: ReceivedMessage, reason: str, description: str) -> None:
        ...

    async def renew_lease(self, message: ReceivedMessage) -> None:
        """Extend the lease of a message.

        Raises:
            LeaseLostError: If the lease can no longer be renewed.
        """
        ...

    async def close(self) -> None:
        ...


def create_queue_backend(config: Config, credential: AsyncTokenCredential | None) -> QueueBackend:
    """Build the queue backend selected by QUEUE_BACKEND.

    A managed identity credential is required unless an emulator connection
    string is configured.
    """
    from .config import QueueBackendType

    match config.queue_backend:
        case QueueBackendType.SERVICE_BUS:
            from .servicebus_backend import ServiceBusBackend

            if config.servicebus_connection_string:
                return ServiceBusBackend.from_connection_string(
                    config.servicebus_connection_string,
                    config.queue_name,
                    lease_duration_seconds=config.lease_duration_seconds,
                )
            if credential is None:
                raise ValueError("A managed identity credential is required for Service Bus")
            return ServiceBusBackend.from_namespace(
                config.servicebus_namespace or "",
                config.queue_name,
                credential,
                lease_duration_seconds=config.lease_duration_seconds,
            )
        case QueueBackendType.STORAGE_QUEUE:
            from .storage_queue_backend import StorageQueueBackend

            connection_string = config.effective_storage_connection_string
            if connection_string:
                return StorageQueueBackend.from_connection_string(
                    connection_string,
                    config.queue_name,
                    lease_duration_seconds=config.lease_duration_seconds,
                )
            if credential is None:
                raise ValueError("A managed identity credential is required for Storage Queue")
            return StorageQueueBackend.from_account_url(
                config.storage_account_url or "",
                config.queue_name,
                credential,
                lease_duration_seconds=config.lease_duration_seconds,
            )
        case _:
            raise ValueError(f"Unsupported queue backend: {config.queue_backend}")
