"""Queue consumer: pulls analysis requests and drives the orchestrator.

Per message:
1. Decode and validate. Malformed messages are dead-lettered with reason
   MalformedMessage and never reach the orchestrator.
2. Request-level dedupe: a request whose AnalysisStatus is terminal is
   completed without re-running.
3. Run the orchestrator while a background task renews the lease every half
   lease duration. A lost lease cancels the analysis.
4. Settle: success or not-found completes the message. Transient failures
   leave it for redelivery when the lease expires, until the delivery count
   reaches MAX_DELIVERY_COUNT and it is dead-lettered. Fatal errors abandon
   the message and stop the consumer, and run() re-raises them.

At most max_concurrent_analyses messages are in flight. stop() ends
receiving, gives in-flight work a grace period, then cancels it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime

from azure.core.exceptions import AzureError

from .config import (
    DEFAULT_MAX_CONCURRENT_ANALYSES,
    DEFAULT_MAX_DELIVERY_COUNT,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_SHUTDOWN_GRACE_SECONDS,
    POLL_ERROR_BACKOFF_SECONDS,
    Config,
)
from .domain import utcnow
from .errors import AnalysisCancelledError, MalformedMessageError, TransientError
from .models import AnalysisRequest
from .notifier import FailedEvent
from .orchestrator import AnalysisContext, AnalysisOrchestrator, OutcomeStatus
from .ports import Notifier
from .queue_backend import (
    DEAD_LETTER_MALFORMED,
    DEAD_LETTER_MAX_DELIVERY,
    LeaseLostError,
    QueueBackend,
    ReceivedMessage,
)

logger = logging.getLogger(__name__)

# Time cancelled analyses get to unwind before their tasks are cancelled
HARD_CANCEL_TIMEOUT_SECONDS = 5


@dataclass(frozen=True)
class DeadLetterRecord:
    """A message this worker dead-lettered."""

    message_id: str
    reason: str
    description: str
    delivery_count: int
    correlation_id: str | None = None
    dead_lettered_at: datetime = field(default_factory=utcnow)


@dataclass
class _InFlight:
    message: ReceivedMessage
    task: asyncio.Task[None]
    context: AnalysisContext | None = None


class MessageConsumer:
    """Bounded worker pool consuming a QueueBackend."""

    def __init__(
        self,
        backend: QueueBackend,
        orchestrator: AnalysisOrchestrator,
        notifier: Notifier,
        *,
        max_concurrent_analyses: int = DEFAULT_MAX_CONCURRENT_ANALYSES,
        max_delivery_count: int = DEFAULT_MAX_DELIVERY_COUNT,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        poll_error_backoff_seconds: float = POLL_ERROR_BACKOFF_SECONDS,
        shutdown_grace_seconds: float = DEFAULT_SHUTDOWN_GRACE_SECONDS,
    ) -> None:
        self._backend = backend
        self._orchestrator = orchestrator
        self._notifier = notifier
        self._max_concurrent = max_concurrent_analyses
        self._max_delivery_count = max_delivery_count
        self._poll_interval = poll_interval_seconds
        self._poll_error_backoff = poll_error_backoff_seconds
        self._shutdown_grace = shutdown_grace_seconds

        self._stop_event = asyncio.Event()
        self._inflight: dict[str, _InFlight] = {}
        self._fatal_error: BaseException | None = None

        self.dead_lettered: list[DeadLetterRecord] = []
        self.completed_count = 0

    @classmethod
    def from_config(
        cls,
        config: Config,
        backend: QueueBackend,
        orchestrator: AnalysisOrchestrator,
        notifier: Notifier,
    ) -> MessageConsumer:
        return cls(
            backend,
            orchestrator,
            notifier,
            max_concurrent_analyses=config.max_concurrent_analyses,
            max_delivery_count=config.max_delivery_count,
            poll_interval_seconds=config.poll_interval_seconds,
            shutdown_grace_seconds=config.shutdown_grace_seconds,
        )

    @property
    def in_flight(self) -> int:
        return len(self._inflight)

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Signal the consumer to stop. Safe to call from a signal handler."""
        if not self._stop_event.is_set():
            logger.info("Consumer stop requested", extra={"in_flight": len(self._inflight)})
        self._stop_event.set()

    async def run(self) -> None:
        """Consume until stop() is called or a fatal error occurs.

        Raises:
            FatalError: Or any unexpected error raised while handling a message.
        """
        await self._backend.open()
        logger.info(
            "Starting consumer",
            extra={
                "max_concurrent_analyses": self._max_concurrent,
                "max_delivery_count": self._max_delivery_count,
                "lease_duration_seconds": self._backend.lease_duration_seconds,
                "polling": self._backend.polling,
            },
        )

        try:
            await self._receive_loop()
        finally:
            await self._drain()
            await self._backend.close()

        if self._fatal_error is not None:
            raise self._fatal_error
        logger.info("Consumer shutdown complete", extra={"completed": self.completed_count})

    async def _receive_loop(self) -> None:
        while not self._stop_event.is_set():
            capacity = self._max_concurrent - len(self._inflight)
            if capacity <= 0:
                await self._wait_for_capacity()
                continue

            try:
                messages = await self._backend.receive(capacity, self._poll_interval)
            except (AzureError, OSError) as e:
                logger.error("Queue receive failed", extra={"error": str(e)})
                await self._wait_for_stop(self._poll_error_backoff)
                continue

            if not messages:
                if self._backend.polling:
                    await self._wait_for_stop(self._poll_interval)
                continue

            for message in messages:
                self._start(message)

    def _start(self, message: ReceivedMessage) -> None:
        task = asyncio.create_task(
            self._handle(message), name=f"analysis-{message.message_id}"
        )
        self._inflight[message.message_id] = _InFlight(message=message, task=task)
        task.add_done_callback(lambda t, mid=message.message_id: self._on_done(mid, t))

    def _on_done(self, message_id: str, task: asyncio.Task[None]) -> None:
        self._inflight.pop(message_id, None)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and self._fatal_error is None:
            logger.critical(
                "Fatal error while handling message, stopping consumer",
                extra={
                    "message_id": message_id,
                    "error": str(error),
                    "error_type": type(error).__name__,
                },
                exc_info=error,
            )
            self._fatal_error = error
            self._stop_event.set()

    async def _wait_for_capacity(self) -> None:
        tasks = {entry.task for entry in self._inflight.values()}
        stop_waiter = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait(tasks | {stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_waiter.cancel()

    async def _wait_for_stop(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except TimeoutError:
            # Normal timeout, keep polling
            pass

    async def _drain(self) -> None:
        """Give in-flight analyses the grace period, then cancel them."""
        if not self._inflight:
            return

        entries = list(self._inflight.values())
        logger.info(
            "Waiting for in-flight analyses",
            extra={"in_flight": len(entries), "grace_seconds": self._shutdown_grace},
        )
        _, pending = await asyncio.wait(
            {e.task for e in entries}, timeout=self._shutdown_grace
        )
        if not pending:
            return

        logger.warning("Cancelling in-flight analyses", extra={"in_flight": len(pending)})
        for entry in entries:
            if entry.task in pending and entry.context is not None:
                entry.context.cancel()

        _, still_pending = await asyncio.wait(pending, timeout=HARD_CANCEL_TIMEOUT_SECONDS)
        for task in still_pending:
            task.cancel()
        await asyncio.gather(*still_pending, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Message handling
    # -------------------------------------------------------------------------

    async def _handle(self, message: ReceivedMessage) -> None:
        try:
            request = AnalysisRequest.from_message_body(message.body)
        except MalformedMessageError as e:
            await self._dead_letter(message, DEAD_LETTER_MALFORMED, e.message, e.correlation_id)
            return

        context = AnalysisContext(request=request)
        entry = self._inflight.get(message.message_id)
        if entry is not None:
            entry.context = context
        if self._stop_event.is_set():
            # Received just before stop(), leave it to the next worker
            await self._settle(message, self._backend.abandon, "abandon")
            return

        renewal = asyncio.create_task(self._renew_lease(message, context))
        try:
            if await self._orchestrator.is_already_processed(request):
                logger.info(
                    "Duplicate delivery of finished request, completing",
                    extra={
                        "message_id": message.message_id,
                        "correlation_id": request.correlation_id,
                        "delivery_count": message.delivery_count,
                    },
                )
                await self._settle(message, self._backend.complete, "complete")
                return

            outcome = await self._orchestrator.run_analysis(context)
        except AnalysisCancelledError:
            logger.warning(
                "Analysis cancelled, message left for redelivery",
                extra={"message_id": message.message_id, "correlation_id": request.correlation_id},
            )
            await self._settle(message, self._backend.abandon, "abandon")
            return
        except TransientError as e:
            await self._handle_transient(message, request, e)
            return
        except Exception:
            await self._settle(message, self._backend.abandon, "abandon")
            raise
        finally:
            renewal.cancel()
            await asyncio.gather(renewal, return_exceptions=True)

        if outcome.status == OutcomeStatus.NOT_FOUND:
            logger.warning(
                "Analysis target not found, completing message",
                extra={"message_id": message.message_id, "correlation_id": request.correlation_id},
            )
        await self._settle(message, self._backend.complete, "complete")
        self.completed_count += 1

    async def _handle_transient(
        self,
        message: ReceivedMessage,
        request: AnalysisRequest,
        error: TransientError,
    ) -> None:
        if message.delivery_count < self._max_delivery_count:
            logger.warning(
                "Transient failure, message left for redelivery",
                extra={
                    "message_id": message.message_id,
                    "correlation_id": request.correlation_id,
                    "delivery_count": message.delivery_count,
                    "max_delivery_count": self._max_delivery_count,
                    "error": error.message,
                },
            )
            return

        description = (
            f"Delivery {message.delivery_count} of {self._max_delivery_count} failed: {error.message}"
        )
        await self._dead_letter(
            message, DEAD_LETTER_MAX_DELIVERY, description, request.correlation_id
        )
        await self._notifier.publish(
            request.tenant_id,
            FailedEvent(
                correlation_id=request.correlation_id,
                pipeline_id=request.pipeline_id or "",
                pipeline_name="",
                tenant_id=request.tenant_id,
                error=description,
            ),
        )

    async def _dead_letter(
        self,
        message: ReceivedMessage,
        reason: str,
        description: str,
        correlation_id: str | None,
    ) -> None:
        logger.error(
            "Dead-lettering message",
            extra={
                "message_id": message.message_id,
                "correlation_id": correlation_id,
                "reason": reason,
                "description": description,
                "delivery_count": message.delivery_count,
            },
        )
        try:
            await self._backend.dead_letter(message, reason, description)
        except (LeaseLostError, AzureError) as e:
            logger.error(
                "Dead-lettering failed, message will be redelivered",
                extra={"message_id": message.message_id, "error": str(e)},
            )
            return
        self.dead_lettered.append(
            DeadLetterRecord(
                message_id=message.message_id,
                reason=reason,
                description=description,
                delivery_count=message.delivery_count,
                correlation_id=correlation_id,
            )
        )

    async def _settle(
        self,
        message: ReceivedMessage,
        operation: Callable[[ReceivedMessage], Awaitable[None]],
        name: str,
    ) -> None:
        """Complete or abandon a message. A lost lease only means a redelivery."""
        try:
            await operation(message)
        except (LeaseLostError, AzureError) as e:
            logger.warning(
                f"Message {name} failed, message will be redelivered",
                extra={"message_id": message.message_id, "error": str(e)},
            )

    async def _renew_lease(self, message: ReceivedMessage, context: AnalysisContext) -> None:
        interval = self._backend.lease_duration_seconds / 2
        while True:
            await asyncio.sleep(interval)
            try:
                await self._backend.renew_lease(message)
            except LeaseLostError as e:
                logger.warning(
                    "Lease lost, cancelling analysis",
                    extra={
                        "message_id": message.message_id,
                        "correlation_id": context.correlation_id,
                        "error": e.message,
                    },
                )
                context.cancel()
                return
            except AzureError as e:
                logger.warning(
                    "Lease renewal failed, retrying at next interval",
                    extra={"message_id": message.message_id, "error": str(e)},
                )
