"""Tests for the Service Bus and Storage Queue backends against mocked SDK clients."""

from __future__ import annotations

import base64
import json
from datetime import UTC, datetime
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from azure.core.exceptions import HttpResponseError, ResourceExistsError, ResourceNotFoundError
from azure.servicebus import ServiceBusReceiveMode
from azure.servicebus.exceptions import MessageLockLostError, ServiceBusError
from azure.storage.queue import QueueMessage

from azure_mock import MockAsyncManagedIdentityCredential
from driftwatch.config import (
    DEFAULT_QUEUE_NAME,
    EMULATOR_STORAGE_CONNECTION_STRING,
    Config,
    QueueBackendType,
)
from driftwatch.queue_backend import LeaseLostError, ReceivedMessage, create_queue_backend
from driftwatch.servicebus_backend import ServiceBusBackend
from driftwatch.storage_queue_backend import (
    MAX_MESSAGES_PER_RECEIVE,
    POISON_QUEUE_SUFFIX,
    StorageQueueBackend,
    decode_body,
    encode_body,
    poison_envelope,
)

BODY = b'{"correlationId": "corr-1", "tenantId": "contoso"}'


def http_error(status_code: int, message: str = "Mock failure") -> HttpResponseError:
    error = HttpResponseError(message=message)
    error.status_code = status_code
    return error


async def async_iter(items: list):
    for item in items:
        yield item


# =============================================================================
# Storage Queue
# =============================================================================


def storage_message(
    message_id: str = "m-1",
    content: str | None = None,
    dequeue_count: int = 1,
    pop_receipt: str = "receipt-1",
) -> QueueMessage:
    message = QueueMessage(content=content if content is not None else encode_body(BODY))
    message.id = message_id
    message.dequeue_count = dequeue_count
    message.pop_receipt = pop_receipt
    message.inserted_on = datetime(2026, 1, 5, 8, 0, tzinfo=UTC)
    return message


def queue_client(name: str) -> MagicMock:
    client = MagicMock()
    client.queue_name = name
    client.create_queue = AsyncMock()
    client.delete_message = AsyncMock()
    client.update_message = AsyncMock()
    client.send_message = AsyncMock()
    client.close = AsyncMock()
    return client


@pytest.fixture
def queue() -> MagicMock:
    return queue_client("drift-analysis")


@pytest.fixture
def poison_queue() -> MagicMock:
    return queue_client("drift-analysis-poison")


@pytest.fixture
def storage_backend(queue: MagicMock, poison_queue: MagicMock) -> StorageQueueBackend:
    return StorageQueueBackend(queue, poison_queue, lease_duration_seconds=300)


def leased(message: QueueMessage) -> ReceivedMessage:
    return ReceivedMessage(message_id=message.id, body=BODY, delivery_count=2, handle=message)


class TestBodyCodec:
    """Tests for storage message body encoding."""

    def test_decodes_base64(self) -> None:
        assert decode_body(encode_body(BODY)) == BODY

    def test_raw_json_passes_through(self) -> None:
        assert decode_body(BODY.decode()) == BODY

    def test_poison_envelope(self) -> None:
        message = ReceivedMessage(message_id="m-1", body=b"\xffnot json", delivery_count=5)

        envelope = json.loads(poison_envelope(message, "MalformedMessage", "Invalid JSON"))

        assert envelope["deadLetterReason"] == "MalformedMessage"
        assert envelope["deadLetterErrorDescription"] == "Invalid JSON"
        assert envelope["originalMessageId"] == "m-1"
        assert envelope["dequeueCount"] == 5
        assert envelope["body"].endswith("not json")


class TestStorageQueueBackend:
    """Tests for StorageQueueBackend."""

    def test_lease_properties(self, storage_backend: StorageQueueBackend) -> None:
        assert storage_backend.lease_duration_seconds == 300
        assert storage_backend.polling is True

    @pytest.mark.asyncio
    async def test_open_creates_both_queues(
        self, storage_backend: StorageQueueBackend, queue: MagicMock, poison_queue: MagicMock
    ) -> None:
        poison_queue.create_queue.side_effect = ResourceExistsError("QueueAlreadyExists")

        await storage_backend.open()

        queue.create_queue.assert_awaited_once()
        poison_queue.create_queue.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_receive(self, storage_backend: StorageQueueBackend, queue: MagicMock) -> None:
        queue.receive_messages.return_value = async_iter(
            [storage_message("m-1", dequeue_count=3), storage_message("m-2", content="plain text")]
        )

        messages = await storage_backend.receive(max_messages=50, max_wait_seconds=5)

        queue.receive_messages.assert_called_once_with(
            messages_per_page=MAX_MESSAGES_PER_RECEIVE,
            visibility_timeout=300,
            max_messages=MAX_MESSAGES_PER_RECEIVE,
        )
        assert [m.message_id for m in messages] == ["m-1", "m-2"]
        assert messages[0].body == BODY
        assert messages[0].delivery_count == 3
        assert messages[0].enqueued_at == datetime(2026, 1, 5, 8, 0, tzinfo=UTC)
        assert messages[1].body == b"plain text"

    @pytest.mark.asyncio
    async def test_complete(self, storage_backend: StorageQueueBackend, queue: MagicMock) -> None:
        await storage_backend.complete(leased(storage_message()))

        queue.delete_message.assert_awaited_once_with("m-1", "receipt-1")

    @pytest.mark.asyncio
    async def test_complete_lost_lease(self, storage_backend: StorageQueueBackend, queue: MagicMock) -> None:
        queue.delete_message.side_effect = ResourceNotFoundError("MessageNotFound")

        with pytest.raises(LeaseLostError):
            await storage_backend.complete(leased(storage_message()))

    @pytest.mark.asyncio
    async def test_abandon_makes_visible(self, storage_backend: StorageQueueBackend, queue: MagicMock) -> None:
        await storage_backend.abandon(leased(storage_message()))

        queue.update_message.assert_awaited_once_with("m-1", "receipt-1", visibility_timeout=0)

    @pytest.mark.asyncio
    async def test_renew_updates_pop_receipt(
        self, storage_backend: StorageQueueBackend, queue: MagicMock
    ) -> None:
        handle = storage_message()
        queue.update_message.return_value = SimpleNamespace(
            pop_receipt="receipt-2", next_visible_on=datetime(2026, 1, 5, 8, 5, tzinfo=UTC)
        )

        await storage_backend.renew_lease(leased(handle))

        queue.update_message.assert_awaited_once_with("m-1", "receipt-1", visibility_timeout=300)
        assert handle.pop_receipt == "receipt-2"

        # Settlement uses the new receipt
        await storage_backend.complete(leased(handle))
        queue.delete_message.assert_awaited_once_with("m-1", "receipt-2")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [400, 404])
    async def test_renew_rejected(
        self, storage_backend: StorageQueueBackend, queue: MagicMock, status_code: int
    ) -> None:
        queue.update_message.side_effect = http_error(status_code, "PopReceiptMismatch")

        with pytest.raises(LeaseLostError):
            await storage_backend.renew_lease(leased(storage_message()))

    @pytest.mark.asyncio
    async def test_renew_service_error_propagates(
        self, storage_backend: StorageQueueBackend, queue: MagicMock
    ) -> None:
        queue.update_message.side_effect = http_error(503, "ServerBusy")

        with pytest.raises(HttpResponseError):
            await storage_backend.renew_lease(leased(storage_message()))

    @pytest.mark.asyncio
    async def test_dead_letter_moves_to_poison_queue(
        self, storage_backend: StorageQueueBackend, queue: MagicMock, poison_queue: MagicMock
    ) -> None:
        await storage_backend.dead_letter(
            leased(storage_message()), "MaxDeliveryCountExceeded", "Delivered 5 times"
        )

        sent = poison_queue.send_message.await_args.args[0]
        envelope = json.loads(base64.b64decode(sent))
        assert envelope["deadLetterReason"] == "MaxDeliveryCountExceeded"
        assert json.loads(envelope["body"])["correlationId"] == "corr-1"
        queue.delete_message.assert_awaited_once_with("m-1", "receipt-1")

    @pytest.mark.asyncio
    async def test_close(
        self, storage_backend: StorageQueueBackend, queue: MagicMock, poison_queue: MagicMock
    ) -> None:
        await storage_backend.close()

        queue.close.assert_awaited_once()
        poison_queue.close.assert_awaited_once()


# =============================================================================
# Service Bus
# =============================================================================


def servicebus_message(message_id: str = "m-1", body: object = BODY, delivery_count: int | None = 0):
    return SimpleNamespace(
        message_id=message_id,
        body=body,
        delivery_count=delivery_count,
        enqueued_time_utc=datetime(2026, 1, 5, 8, 0, tzinfo=UTC),
    )


@pytest.fixture
def receiver() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def servicebus_client(receiver: AsyncMock) -> MagicMock:
    client = MagicMock()
    client.get_queue_receiver.return_value = receiver
    client.close = AsyncMock()
    return client


@pytest.fixture
def servicebus_backend(servicebus_client: MagicMock) -> ServiceBusBackend:
    return ServiceBusBackend(servicebus_client, "drift-analysis", lease_duration_seconds=300)


class TestServiceBusBackend:
    """Tests for ServiceBusBackend."""

    def test_lease_properties(self, servicebus_backend: ServiceBusBackend) -> None:
        assert servicebus_backend.lease_duration_seconds == 300
        assert servicebus_backend.polling is False

    @pytest.mark.asyncio
    async def test_receive_before_open(self, servicebus_backend: ServiceBusBackend) -> None:
        with pytest.raises(RuntimeError, match="not open"):
            await servicebus_backend.receive(1, 5)

    @pytest.mark.asyncio
    async def test_open_uses_peek_lock(
        self, servicebus_backend: ServiceBusBackend, servicebus_client: MagicMock
    ) -> None:
        await servicebus_backend.open()

        servicebus_client.get_queue_receiver.assert_called_once_with(
            queue_name="drift-analysis",
            receive_mode=ServiceBusReceiveMode.PEEK_LOCK,
            prefetch_count=0,
        )

    @pytest.mark.asyncio
    async def test_receive(self, servicebus_backend: ServiceBusBackend, receiver: AsyncMock) -> None:
        receiver.receive_messages.return_value = [
            servicebus_message("m-1", delivery_count=0),
            servicebus_message("m-2", body=[b'{"correlationId": ', b'"corr-2"}'], delivery_count=2),
            servicebus_message("m-3", body="text", delivery_count=None),
        ]
        await servicebus_backend.open()

        messages = await servicebus_backend.receive(max_messages=4, max_wait_seconds=5)

        receiver.receive_messages.assert_awaited_once_with(max_message_count=4, max_wait_time=5)
        assert [m.delivery_count for m in messages] == [1, 3, 1]
        assert messages[0].body == BODY
        assert messages[1].body == b'{"correlationId": "corr-2"}'
        assert messages[2].body == b"text"

    @pytest.mark.asyncio
    async def test_settlement(self, servicebus_backend: ServiceBusBackend, receiver: AsyncMock) -> None:
        handle = servicebus_message()
        message = ReceivedMessage(message_id="m-1", body=BODY, handle=handle)
        await servicebus_backend.open()

        await servicebus_backend.complete(message)
        await servicebus_backend.abandon(message)
        await servicebus_backend.dead_letter(message, "MalformedMessage", "x" * 2000)

        receiver.complete_message.assert_awaited_once_with(handle)
        receiver.abandon_message.assert_awaited_once_with(handle)
        kwargs = receiver.dead_letter_message.await_args.kwargs
        assert kwargs["reason"] == "MalformedMessage"
        assert len(kwargs["error_description"]) == 1024

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [MessageLockLostError(), ServiceBusError("Link detached")],
    )
    async def test_renew_lost(
        self, servicebus_backend: ServiceBusBackend, receiver: AsyncMock, error: Exception
    ) -> None:
        receiver.renew_message_lock.side_effect = error
        await servicebus_backend.open()

        with pytest.raises(LeaseLostError):
            await servicebus_backend.renew_lease(ReceivedMessage(message_id="m-1", body=BODY))

    @pytest.mark.asyncio
    async def test_close(
        self,
        servicebus_backend: ServiceBusBackend,
        servicebus_client: MagicMock,
        receiver: AsyncMock,
    ) -> None:
        await servicebus_backend.open()

        await servicebus_backend.close()
        await servicebus_backend.close()

        receiver.close.assert_awaited_once()
        assert servicebus_client.close.await_count == 2


# =============================================================================
# Factory
# =============================================================================


class TestCreateQueueBackend:
    """Tests for create_queue_backend."""

    @pytest.fixture
    def definitions_dir(self, tmp_path: Path) -> Path:
        return tmp_path

    def test_storage_emulator(self, definitions_dir: Path) -> None:
        config = Config(definitions_dir=definitions_dir)

        with patch("driftwatch.storage_queue_backend.QueueClient") as client_class:
            backend = create_queue_backend(config, None)

        assert isinstance(backend, StorageQueueBackend)
        names = [c.args[1] for c in client_class.from_connection_string.call_args_list]
        assert names == [DEFAULT_QUEUE_NAME, DEFAULT_QUEUE_NAME + POISON_QUEUE_SUFFIX]
        assert client_class.from_connection_string.call_args.args[0] == EMULATOR_STORAGE_CONNECTION_STRING

    def test_storage_managed_identity(self, definitions_dir: Path) -> None:
        config = Config(
            definitions_dir=definitions_dir,
            storage_account_url="https://stdrift.queue.core.windows.net",
        )
        credential = MockAsyncManagedIdentityCredential()

        with patch("driftwatch.storage_queue_backend.QueueClient") as client_class:
            backend = create_queue_backend(config, credential)

        assert backend.lease_duration_seconds == config.lease_duration_seconds
        assert client_class.call_args.kwargs == {
            "account_url": "https://stdrift.queue.core.windows.net",
            "queue_name": DEFAULT_QUEUE_NAME + POISON_QUEUE_SUFFIX,
            "credential": credential,
        }

    def test_storage_requires_credential(self, definitions_dir: Path) -> None:
        config = Config(
            definitions_dir=definitions_dir,
            storage_account_url="https://stdrift.queue.core.windows.net",
        )

        with pytest.raises(ValueError, match="managed identity"):
            create_queue_backend(config, None)

    def test_servicebus_namespace(self, definitions_dir: Path) -> None:
        config = Config(
            definitions_dir=definitions_dir,
            queue_backend=QueueBackendType.SERVICE_BUS,
            servicebus_namespace="sb-drift.servicebus.windows.net",
        )
        credential = MockAsyncManagedIdentityCredential()

        with patch("driftwatch.servicebus_backend.ServiceBusClient") as client_class:
            backend = create_queue_backend(config, credential)

        assert isinstance(backend, ServiceBusBackend)
        client_class.assert_called_once_with(
            fully_qualified_namespace="sb-drift.servicebus.windows.net",
            credential=credential,
        )

    def test_servicebus_requires_credential(self, definitions_dir: Path) -> None:
        config = Config(
            definitions_dir=definitions_dir,
            queue_backend=QueueBackendType.SERVICE_BUS,
            servicebus_namespace="sb-drift.servicebus.windows.net",
        )

        with pytest.raises(ValueError, match="managed identity"):
            create_queue_backend(config, None)
