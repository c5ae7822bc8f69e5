"""Azure Service Bus queue backend (peek-lock).

The queue's lock duration must match LEASE_DURATION_SECONDS: the consumer
renews locks at half that interval. Dead-lettered messages land in the
queue's native dead-letter sub-queue with reason and description set.
"""

from __future__ import annotations

import logging

from azure.core.credentials_async import AsyncTokenCredential
from azure.servicebus import ServiceBusReceivedMessage, ServiceBusReceiveMode
from azure.servicebus.aio import ServiceBusClient, ServiceBusReceiver
from azure.servicebus.exceptions import MessageLockLostError, ServiceBusError

from .queue_backend import LeaseLostError, ReceivedMessage

logger = logging.getLogger(__name__)


def _body_bytes(message: ServiceBusReceivedMessage) -> bytes:
    body = message.body
    if isinstance(body, bytes | bytearray):
        return bytes(body)
    if isinstance(body, str):
        return body.encode("utf-8")
    # Data bodies arrive as an iterable of byte sections
    return b"".join(bytes(section) for section in body)


class ServiceBusBackend:
    """QueueBackend on an Azure Service Bus queue."""

    def __init__(
        self,
        client: ServiceBusClient,
        queue_name: str,
        lease_duration_seconds: int,
    ) -> None:
        self._client = client
        self._queue_name = queue_name
        self._lease_duration_seconds = lease_duration_seconds
        self._receiver: ServiceBusReceiver | None = None

    @classmethod
    def from_namespace(
        cls,
        fully_qualified_namespace: str,
        queue_name: str,
        credential: AsyncTokenCredential,
        lease_duration_seconds: int,
    ) -> ServiceBusBackend:
        client = ServiceBusClient(
            fully_qualified_namespace=fully_qualified_namespace,
            credential=credential,
        )
        return cls(client, queue_name, lease_duration_seconds)

    @classmethod
    def from_connection_string(
        cls,
        connection_string: str,
        queue_name: str,
        lease_duration_seconds: int,
    ) -> ServiceBusBackend:
        client = ServiceBusClient.from_connection_string(conn_str=connection_string)
        return cls(client, queue_name, lease_duration_seconds)

    @property
    def lease_duration_seconds(self) -> int:
        return self._lease_duration_seconds

    @property
    def polling(self) -> bool:
        return False

    def _get_receiver(self) -> ServiceBusReceiver:
        if self._receiver is None:
            raise RuntimeError("Service Bus backend is not open")
        return self._receiver

    async def open(self) -> None:
        self._receiver = self._client.get_queue_receiver(
            queue_name=self._queue_name,
            receive_mode=ServiceBusReceiveMode.PEEK_LOCK,
            prefetch_count=0,
        )
        logger.info("Service Bus receiver opened", extra={"queue_name": self._queue_name})

    async def receive(self, max_messages: int, max_wait_seconds: float) -> list[ReceivedMessage]:
        messages = await self._get_receiver().receive_messages(
            max_message_count=max_messages,
            max_wait_time=max_wait_seconds,
        )
        return [
            ReceivedMessage(
                message_id=str(m.message_id),
                body=_body_bytes(m),
                # The AMQP header counts prior attempts only
                delivery_count=(m.delivery_count or 0) + 1,
                enqueued_at=m.enqueued_time_utc,
                handle=m,
            )
            for m in messages
        ]

    async def complete(self, message: ReceivedMessage) -> None:
        await self._get_receiver().complete_message(message.handle)

    async def abandon(self, message: ReceivedMessage) -> None:
        await self._get_receiver().abandon_message(message.handle)

    async def dead_letter(self, message: ReceivedMessage, reason: str, description: str) -> None:
        await self._get_receiver().dead_letter_message(
            message.handle,
            reason=reason,
            error_description=description[:1024],
        )

    async def renew_lease(self, message: ReceivedMessage) -> None:
        try:
            await self._get_receiver().renew_message_lock(message.handle)
        except MessageLockLostError as e:
            raise LeaseLostError(f"Lock lost for message {message.message_id}") from e
        except ServiceBusError as e:
            raise LeaseLostError(f"Lock renewal failed for message {message.message_id}: {e}") from e

    async def close(self) -> None:
        if self._receiver is not None:
            await self._receiver.close()
            self._receiver = None
        await self._client.close()
        logger.info("Service Bus backend closed", extra={"queue_name": self._queue_name})
