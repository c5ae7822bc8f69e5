"""Azure Storage Queue backend (visibility-timeout leases).

Storage queues have no broker-side lock or dead-letter queue, so:
- The lease is the visibility timeout. Renewing it updates the message,
  which issues a new pop receipt; the old receipt becomes invalid.
- Dead-lettering moves the message to ``<queue>-poison`` (wrapped in a JSON
  envelope carrying the reason) and deletes the original.

Message bodies are base64 encoded. Bodies that are not valid base64 are
passed through as raw UTF-8 so the consumer can dead-letter them.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging

from azure.core.credentials_async import AsyncTokenCredential
from azure.core.exceptions import HttpResponseError, ResourceExistsError, ResourceNotFoundError
from azure.storage.queue import QueueMessage
from azure.storage.queue.aio import QueueClient

from .queue_backend import LeaseLostError, ReceivedMessage

logger = logging.getLogger(__name__)

POISON_QUEUE_SUFFIX = "-poison"

# Storage Queue maximum number of messages per receive call
MAX_MESSAGES_PER_RECEIVE = 32


def decode_body(content: str | bytes) -> bytes:
    """Decode a base64 message body, falling back to the raw content."""
    raw = content.encode("utf-8") if isinstance(content, str) else bytes(content)
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        return raw


def encode_body(body: bytes) -> str:
    return base64.b64encode(body).decode("ascii")


def poison_envelope(message: ReceivedMessage, reason: str, description: str) -> bytes:
    """JSON envelope stored in the poison queue."""
    return json.dumps(
        {
            "deadLetterReason": reason,
            "deadLetterErrorDescription": description,
            "originalMessageId": message.message_id,
            "dequeueCount": message.delivery_count,
            "body": message.body.decode("utf-8", errors="replace"),
        }
    ).encode("utf-8")


class StorageQueueBackend:
    """QueueBackend on an Azure Storage queue plus its poison queue."""

    def __init__(
        self,
        queue: QueueClient,
        poison_queue: QueueClient,
        lease_duration_seconds: int,
    ) -> None:
        self._queue = queue
        self._poison_queue = poison_queue
        self._lease_duration_seconds = lease_duration_seconds

    @classmethod
    def from_account_url(
        cls,
        account_url: str,
        queue_name: str,
        credential: AsyncTokenCredential,
        lease_duration_seconds: int,
    ) -> StorageQueueBackend:
        return cls(
            QueueClient(account_url=account_url, queue_name=queue_name, credential=credential),
            QueueClient(
                account_url=account_url,
                queue_name=queue_name + POISON_QUEUE_SUFFIX,
                credential=credential,
            ),
            lease_duration_seconds,
        )

    @classmethod
    def from_connection_string(
        cls,
        connection_string: str,
        queue_name: str,
        lease_duration_seconds: int,
    ) -> StorageQueueBackend:
        return cls(
            QueueClient.from_connection_string(connection_string, queue_name),
            QueueClient.from_connection_string(connection_string, queue_name + POISON_QUEUE_SUFFIX),
            lease_duration_seconds,
        )

    @property
    def lease_duration_seconds(self) -> int:
        return self._lease_duration_seconds

    @property
    def polling(self) -> bool:
        return True

    async def open(self) -> None:
        for client in (self._queue, self._poison_queue):
            try:
                await client.create_queue()
            except ResourceExistsError:
                pass
        logger.info("Storage queue backend opened", extra={"queue_name": self._queue.queue_name})

    async def receive(self, max_messages: int, max_wait_seconds: float) -> list[ReceivedMessage]:
        # Storage queues do not long-poll, max_wait_seconds is handled by the caller
        count = max(1, min(max_messages, MAX_MESSAGES_PER_RECEIVE))
        received: list[ReceivedMessage] = []
        async for message in self._queue.receive_messages(
            messages_per_page=count,
            visibility_timeout=self._lease_duration_seconds,
            max_messages=count,
        ):
            received.append(
                ReceivedMessage(
                    message_id=message.id,
                    body=decode_body(message.content),
                    delivery_count=message.dequeue_count or 1,
                    enqueued_at=message.inserted_on,
                    handle=message,
                )
            )
        return received

    async def complete(self, message: ReceivedMessage) -> None:
        handle: QueueMessage = message.handle
        try:
            await self._queue.delete_message(handle.id, handle.pop_receipt)
        except ResourceNotFoundError as e:
            raise LeaseLostError(f"Message {message.message_id} is no longer leased") from e

    async def abandon(self, message: ReceivedMessage) -> None:
        handle: QueueMessage = message.handle
        try:
            await self._queue.update_message(handle.id, handle.pop_receipt, visibility_timeout=0)
        except ResourceNotFoundError as e:
            raise LeaseLostError(f"Message {message.message_id} is no longer leased") from e

    async def dead_letter(self, message: ReceivedMessage, reason: str, description: str) -> None:
        await self._poison_queue.send_message(
            encode_body(poison_envelope(message, reason, description))
        )
        await self.complete(message)
        logger.warning(
            "Message moved to poison queue",
            extra={
                "message_id": message.message_id,
                "poison_queue": self._poison_queue.queue_name,
                "reason": reason,
            },
        )

    async def renew_lease(self, message: ReceivedMessage) -> None:
        handle: QueueMessage = message.handle
        try:
            updated = await self._queue.update_message(
                handle.id,
                handle.pop_receipt,
                visibility_timeout=self._lease_duration_seconds,
            )
        except ResourceNotFoundError as e:
            raise LeaseLostError(f"Message {message.message_id} is no longer leased") from e
        except HttpResponseError as e:
            if e.status_code in (400, 404):
                # PopReceiptMismatch / MessageNotFound
                raise LeaseLostError(
                    f"Lease renewal rejected for message {message.message_id}: {e.message}"
                ) from e
            raise
        handle.pop_receipt = updated.pop_receipt
        handle.next_visible_on = updated.next_visible_on

    async def close(self) -> None:
        await self._queue.close()
        await self._poison_queue.close()
        logger.info("Storage queue backend closed", extra={"queue_name": self._queue.queue_name})
