"""Progress and result notifications.

Notifications are best effort: they exist so a UI can show live progress,
and nothing in the analysis ever depends on them being delivered. Every
transport is therefore wrapped in a SafeNotifier, which bounds each publish
with a timeout and logs and drops failures instead of raising.

Wire payloads mirror the hub messages consumed by the dashboard:
camelCase keys, a ``type`` discriminator (analysis_progress,
analysis_completed, analysis_failed) and hub targets analysisProgress,
analysisCompleted and analysisFailed sent to the group ``tenant-<id>``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar

import aiohttp

from .config import NOTIFY_TIMEOUT_SECONDS
from .domain import utcnow

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIBER_QUEUE_SIZE = 100


class ProgressStage(str, Enum):
    """Pipeline analysis stages reported as progress, in order."""

    FETCH_EXPECTED = "fetch-expected"
    FETCH_OBSERVED = "fetch-observed"
    ANALYZING = "analyzing"
    PERSISTING = "persisting"

    @property
    def percent(self) -> int:
        return _STAGE_PERCENT[self]


_STAGE_PERCENT: dict[ProgressStage, int] = {
    ProgressStage.FETCH_EXPECTED: 10,
    ProgressStage.FETCH_OBSERVED: 40,
    ProgressStage.ANALYZING: 70,
    ProgressStage.PERSISTING: 100,
}


def tenant_group(tenant_id: str) -> str:
    return f"tenant-{tenant_id}"


@dataclass(frozen=True)
class _Event:
    correlation_id: str
    pipeline_id: str
    pipeline_name: str
    tenant_id: str

    event_type: ClassVar[str] = ""
    target: ClassVar[str] = ""

    def _envelope(self) -> dict[str, Any]:
        return {
            "type": self.event_type,
            "correlationId": self.correlation_id,
            "pipelineId": self.pipeline_id,
            "pipelineName": self.pipeline_name,
            "tenantId": self.tenant_id,
        }


@dataclass(frozen=True)
class ProgressEvent(_Event):
    stage: ProgressStage = ProgressStage.FETCH_EXPECTED
    message: str = ""
    timestamp: datetime = field(default_factory=utcnow)

    event_type: ClassVar[str] = "analysis_progress"
    target: ClassVar[str] = "analysisProgress"

    @property
    def percent(self) -> int:
        return self.stage.percent

    def to_dict(self) -> dict[str, Any]:
        return {
            **self._envelope(),
            "stage": self.stage.value,
            "progress": self.percent,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class CompletedEvent(_Event):
    summary: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    event_type: ClassVar[str] = "analysis_completed"
    target: ClassVar[str] = "analysisCompleted"

    def to_dict(self) -> dict[str, Any]:
        return {
            **self._envelope(),
            "summary": dict(self.summary),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class FailedEvent(_Event):
    error: str = ""
    timestamp: datetime = field(default_factory=utcnow)

    event_type: ClassVar[str] = "analysis_failed"
    target: ClassVar[str] = "analysisFailed"

    def to_dict(self) -> dict[str, Any]:
        return {
            **self._envelope(),
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


NotificationEvent = ProgressEvent | CompletedEvent | FailedEvent


# =============================================================================
# Transports
# =============================================================================


@dataclass
class Subscription:
    """Handle returned by NotificationHub.subscribe()."""

    tenant_id: str | None
    queue: asyncio.Queue[NotificationEvent]
    dropped: int = 0

    async def get(self) -> NotificationEvent:
        return await self.queue.get()


class NotificationHub:
    """In-process publish/subscribe hub.

    Each subscriber gets a bounded queue. A full queue drops the event for
    that subscriber only, so a slow consumer never blocks analysis.
    """

    def __init__(self, queue_size: int = DEFAULT_SUBSCRIBER_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscriptions: list[Subscription] = []

    def subscribe(self, tenant_id: str | None = None) -> Subscription:
        """Subscribe to one tenant's events, or to all events when tenant_id is None."""
        subscription = Subscription(tenant_id=tenant_id, queue=asyncio.Queue(self._queue_size))
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, tenant_id: str, event: NotificationEvent) -> None:
        for subscription in list(self._subscriptions):
            if subscription.tenant_id not in (None, tenant_id):
                continue
            try:
                subscription.queue.put_nowait(event)
            except asyncio.QueueFull:
                subscription.dropped += 1
                logger.debug(
                    "Subscriber queue full, dropping notification",
                    extra={"tenant_id": tenant_id, "event_type": event.event_type},
                )


class LoggingNotifier:
    """Writes notifications to the structured log."""

    async def publish(self, tenant_id: str, event: NotificationEvent) -> None:
        logger.info(
            "Analysis notification",
            extra={
                "group": tenant_group(tenant_id),
                "target": event.target,
                "payload": event.to_dict(),
            },
        )


class WebhookNotifier:
    """POSTs notifications to a relay that forwards them to the hub.

    Body: ``{"target": <hub target>, "group": "tenant-<id>", "arguments": [payload]}``.
    Non-2xx responses raise aiohttp.ClientResponseError.
    """

    def __init__(self, url: str, session: aiohttp.ClientSession | None = None) -> None:
        self._url = url
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def publish(self, tenant_id: str, event: NotificationEvent) -> None:
        session = await self._get_session()
        body = {
            "target": event.target,
            "group": tenant_group(tenant_id),
            "arguments": [event.to_dict()],
        }
        async with session.post(self._url, json=body) as response:
            response.raise_for_status()

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


class SafeNotifier:
    """Wraps a transport so that publishing never raises or blocks for long."""

    def __init__(self, inner: Any, timeout_seconds: float = NOTIFY_TIMEOUT_SECONDS) -> None:
        self._inner = inner
        self._timeout_seconds = timeout_seconds
        self.failures = 0

    @property
    def inner(self) -> Any:
        return self._inner

    async def publish(self, tenant_id: str, event: NotificationEvent) -> None:
        try:
            await asyncio.wait_for(
                self._inner.publish(tenant_id, event), timeout=self._timeout_seconds
            )
        except Exception as e:
            # Notification loss is acceptable, analysis must go on
            self.failures += 1
            logger.warning(
                "Notification dropped",
                extra={
                    "tenant_id": tenant_id,
                    "correlation_id": event.correlation_id,
                    "event_type": event.event_type,
                    "error": str(e) or type(e).__name__,
                },
            )

    async def close(self) -> None:
        close = getattr(self._inner, "close", None)
        if close is not None:
            await close()
