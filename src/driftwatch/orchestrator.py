"""Analysis orchestrator: runs one analysis request end to end.

For every pipeline of a request the orchestrator:
1. Claims a ScanLog (dedupe guard, deterministic ID, conditional writes)
2. Fetches the expected resources from the IaC definition source
3. Fetches the observed resources from the live resource reader
4. Diffs and classifies them (pure, synchronous)
5. Persists the findings as one batch and closes the ScanLog
6. Publishes progress and result notifications (best effort)

FAILURE ISOLATION:
A pipeline that fails ends in a terminal ScanLog and never affects its
siblings. Transient collaborator errors are retried with exponential backoff
and jitter; permanent ones fail the pipeline immediately. Only fatal
contract violations, unexpected errors, cancellation and an unreachable
store before any pipeline was dispatched escape run_analysis().

IDEMPOTENCE:
ScanLog and DriftRecord IDs are derived from the correlation ID, so a
redelivered request finds its earlier ScanLogs and skips finished pipelines
instead of analysing them twice.
Only SUCCESS and FAILED count as finished. A CANCELLED ScanLog means the
worker stopped or lost its lease mid-scan, so a redelivery starts attempt n+1
under a new ScanLog ID. DriftRecord IDs do not include the attempt, so the new
attempt overwrites any finding the cancelled one already wrote and moves it
to the new ScanLog.
"""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

from .config import (
    DEFAULT_COLLABORATOR_TIMEOUT_SECONDS,
    DEFAULT_FETCH_MAX_ATTEMPTS,
    DEFAULT_LEASE_DURATION_SECONDS,
    DEFAULT_RETRY_BACKOFF_BASE_SECONDS,
    Config,
)
from .diff_engine import ResourceDiffEngine
from .domain import (
    AnalysisStatus,
    DriftAnalysisResult,
    DriftRecord,
    Pipeline,
    ScanLog,
    ScanStatus,
    Severity,
    max_severity,
    utcnow,
)
from .errors import (
    AnalysisCancelledError,
    CollaboratorTimeoutError,
    ConcurrencyConflictError,
    DriftWatchError,
    EntityExistsError,
    PermanentError,
    PipelineNotFoundError,
    ThrottledError,
    TransientError,
)
from .models import AnalysisRequest
from .notifier import CompletedEvent, FailedEvent, ProgressEvent, ProgressStage
from .ports import AnalysisRepository, DefinitionSource, Notifier, ResourceReader

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Attempts for conditional status writes that lose a race
MAX_STATUS_WRITE_ATTEMPTS = 3

# Upper bound for best-effort writes made while cancelling
CANCEL_WRITE_TIMEOUT_SECONDS = 10


# =============================================================================
# Context and outcomes
# =============================================================================


@dataclass
class AnalysisContext:
    """Per-request context passed explicitly through the pipeline.

    The cancel event is tied to the message lease: the consumer sets it when
    the lease is lost or the worker is shutting down.
    """

    request: AnalysisRequest
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def tenant_id(self) -> str:
        return self.request.tenant_id

    @property
    def correlation_id(self) -> str:
        return self.request.correlation_id

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()

    def check_cancelled(self) -> None:
        if self.cancelled:
            raise AnalysisCancelledError(
                "Analysis cancelled", correlation_id=self.correlation_id
            )

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await a collaborator call, abandoning it as soon as the context is cancelled.

        Raises:
            AnalysisCancelledError: If the cancel event fires first.
        """
        if self.cancelled:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            self.check_cancelled()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.cancel_event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task in done:
            waiter.cancel()
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise AnalysisCancelledError("Analysis cancelled", correlation_id=self.correlation_id)

    async def sleep(self, seconds: float) -> None:
        """Sleep that ends early (raising AnalysisCancelledError) on cancellation."""
        await self.run(asyncio.sleep(seconds))


class OutcomeStatus(str, Enum):
    COMPLETED = "completed"
    NOT_FOUND = "not_found"


class PipelineResultStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    # A finished ScanLog already exists for this correlation
    DUPLICATE = "duplicate"
    # Another worker is analysing this pipeline right now
    IN_PROGRESS = "in_progress"


@dataclass
class PipelineOutcome:
    """Result of one pipeline within a request."""

    pipeline_id: str
    pipeline_name: str
    status: PipelineResultStatus
    scan_log_id: str | None = None
    drift_count: int = 0
    overall_risk: Severity = Severity.NONE
    error: str | None = None
    result: DriftAnalysisResult | None = None


@dataclass
class AnalysisOutcome:
    """Result of one analysis request."""

    correlation_id: str
    tenant_id: str
    status: OutcomeStatus = OutcomeStatus.COMPLETED
    pipelines: list[PipelineOutcome] = field(default_factory=list)
    start_time: datetime = field(default_factory=utcnow)
    end_time: datetime | None = None
    error: str | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.status == OutcomeStatus.COMPLETED and self.failed_count == 0

    @property
    def failed_count(self) -> int:
        return sum(1 for p in self.pipelines if p.status == PipelineResultStatus.FAILED)

    @property
    def drift_count(self) -> int:
        return sum(p.drift_count for p in self.pipelines)

    @property
    def overall_risk(self) -> Severity:
        return max_severity(p.overall_risk for p in self.pipelines)

    @property
    def finished(self) -> bool:
        """False while another worker still owns one of the pipelines."""
        return all(p.status != PipelineResultStatus.IN_PROGRESS for p in self.pipelines)


# =============================================================================
# Orchestrator
# =============================================================================


class AnalysisOrchestrator:
    """Runs analysis requests against the collaborator ports."""

    def __init__(
        self,
        definitions: DefinitionSource,
        resources: ResourceReader,
        repository: AnalysisRepository,
        notifier: Notifier,
        engine: ResourceDiffEngine,
        *,
        fetch_max_attempts: int = DEFAULT_FETCH_MAX_ATTEMPTS,
        retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS,
        collaborator_timeout_seconds: float = DEFAULT_COLLABORATOR_TIMEOUT_SECONDS,
        max_parallel_pipelines: int = 1,
        stale_scan_after_seconds: float = DEFAULT_LEASE_DURATION_SECONDS,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            definitions: IaC definition source.
            resources: Live resource reader.
            repository: Scan/drift store.
            notifier: Notification transport (wrap it in SafeNotifier).
            engine: Diff engine with its classifier.
            fetch_max_attempts: Attempts per collaborator call on transient errors.
            retry_backoff_base_seconds: Base of the exponential backoff.
            collaborator_timeout_seconds: Timeout of a single collaborator call.
            max_parallel_pipelines: Pipelines analysed concurrently per request.
            stale_scan_after_seconds: Age after which a RUNNING ScanLog is
                considered abandoned and may be taken over.
        """
        self._definitions = definitions
        self._resources = resources
        self._repository = repository
        self._notifier = notifier
        self._engine = engine
        self._fetch_max_attempts = fetch_max_attempts
        self._backoff_base = retry_backoff_base_seconds
        self._timeout = collaborator_timeout_seconds
        self._max_parallel = max(1, max_parallel_pipelines)
        self._stale_scan_after = stale_scan_after_seconds

    @classmethod
    def from_config(
        cls,
        config: Config,
        definitions: DefinitionSource,
        resources: ResourceReader,
        repository: AnalysisRepository,
        notifier: Notifier,
        engine: ResourceDiffEngine,
    ) -> AnalysisOrchestrator:
        return cls(
            definitions,
            resources,
            repository,
            notifier,
            engine,
            fetch_max_attempts=config.fetch_max_attempts,
            retry_backoff_base_seconds=config.retry_backoff_base_seconds,
            collaborator_timeout_seconds=config.collaborator_timeout_seconds,
            max_parallel_pipelines=config.max_parallel_pipelines,
            stale_scan_after_seconds=config.lease_duration_seconds,
        )

    async def is_already_processed(self, request: AnalysisRequest) -> bool:
        """True if the request reached a terminal AnalysisStatus earlier.

        Raises:
            RepositoryUnavailableError: If the store cannot be reached.
        """
        status = await self._repository.get_analysis_status(
            request.tenant_id, request.correlation_id
        )
        return status is not None and status.is_terminal

    async def run_analysis(self, context: AnalysisContext) -> AnalysisOutcome:
        """Run one analysis request.

        Returns:
            AnalysisOutcome with status COMPLETED (even if some pipelines
            failed) or NOT_FOUND for an unknown pipeline.

        Raises:
            AnalysisCancelledError: If the context was cancelled.
            TransientError: If the store stayed unreachable before dispatch.
            FatalError: On contract violations.
        """
        outcome = AnalysisOutcome(
            correlation_id=context.correlation_id,
            tenant_id=context.tenant_id,
        )
        logger.info(
            "Starting analysis",
            extra={
                "correlation_id": context.correlation_id,
                "tenant_id": context.tenant_id,
                "pipeline_id": context.request.pipeline_id,
                "trigger_type": context.request.trigger_type.value,
                "retry_count": context.request.retry_count,
            },
        )

        status = await self._begin_status(context)

        try:
            pipelines = await self._resolve_pipelines(context)
        except PipelineNotFoundError as e:
            outcome.status = OutcomeStatus.NOT_FOUND
            outcome.error = e.message
            outcome.end_time = utcnow()
            await self._finish_status(context, status, outcome)
            await self._notifier.publish(
                context.tenant_id,
                FailedEvent(
                    correlation_id=context.correlation_id,
                    pipeline_id=e.pipeline_id,
                    pipeline_name="",
                    tenant_id=context.tenant_id,
                    error=e.message,
                ),
            )
            self._log_outcome(outcome)
            return outcome

        outcome.pipelines = await self._analyze_pipelines(context, pipelines)
        outcome.end_time = utcnow()
        await self._finish_status(context, status, outcome)
        self._log_outcome(outcome)
        return outcome

    # -------------------------------------------------------------------------
    # Request level
    # -------------------------------------------------------------------------

    async def _resolve_pipelines(self, context: AnalysisContext) -> list[Pipeline]:
        request = context.request
        if request.pipeline_id is not None:
            pipeline_id = request.pipeline_id
            pipeline = await self._call(
                context,
                "get pipeline",
                lambda: self._repository.get_pipeline(context.tenant_id, pipeline_id),
            )
            if pipeline is None:
                raise PipelineNotFoundError(
                    context.tenant_id, pipeline_id, correlation_id=context.correlation_id
                )
            return [pipeline]

        pipelines = await self._call(
            context,
            "list active pipelines",
            lambda: self._repository.list_active_pipelines(context.tenant_id),
        )
        if not pipelines:
            logger.info(
                "No active pipelines for tenant",
                extra={"correlation_id": context.correlation_id, "tenant_id": context.tenant_id},
            )
        return pipelines

    async def _analyze_pipelines(
        self,
        context: AnalysisContext,
        pipelines: list[Pipeline],
    ) -> list[PipelineOutcome]:
        if self._max_parallel == 1 or len(pipelines) <= 1:
            return [await self._analyze_pipeline(context, p) for p in pipelines]

        semaphore = asyncio.Semaphore(self._max_parallel)

        async def bounded(pipeline: Pipeline) -> PipelineOutcome:
            async with semaphore:
                return await self._analyze_pipeline(context, pipeline)

        results = await asyncio.gather(
            *(bounded(p) for p in pipelines), return_exceptions=True
        )

        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            # Contract violations outrank cancellation
            non_cancel = [e for e in errors if not isinstance(e, AnalysisCancelledError)]
            raise (non_cancel or errors)[0]
        return [r for r in results if isinstance(r, PipelineOutcome)]

    async def _begin_status(self, context: AnalysisContext) -> AnalysisStatus:
        existing = await self._call(
            context,
            "get analysis status",
            lambda: self._repository.get_analysis_status(context.tenant_id, context.correlation_id),
        )
        if existing is not None:
            return existing

        status = AnalysisStatus(
            correlation_id=context.correlation_id,
            tenant_id=context.tenant_id,
            created_at=context.request.created_at,
            started_at=utcnow(),
        )
        try:
            return await self._call(
                context, "create analysis status", lambda: self._repository.save_analysis_status(status)
            )
        except EntityExistsError:
            stored = await self._repository.get_analysis_status(
                context.tenant_id, context.correlation_id
            )
            return stored or status

    async def _finish_status(
        self,
        context: AnalysisContext,
        status: AnalysisStatus,
        outcome: AnalysisOutcome,
    ) -> None:
        if not outcome.finished:
            # The worker owning the remaining pipelines finishes the status
            return

        current = status
        for _ in range(MAX_STATUS_WRITE_ATTEMPTS):
            if current.is_terminal:
                return
            updated = dataclasses.replace(current)
            if outcome.status == OutcomeStatus.NOT_FOUND:
                updated.mark_failed(outcome.error or "Pipeline not found")
            else:
                updated.mark_completed(outcome.drift_count, outcome.overall_risk)
            try:
                await self._call(
                    context,
                    "update analysis status",
                    lambda: self._repository.save_analysis_status(updated),
                )
                return
            except ConcurrencyConflictError:
                reloaded = await self._repository.get_analysis_status(
                    context.tenant_id, context.correlation_id
                )
                if reloaded is None:
                    return
                current = reloaded

        logger.warning(
            "Gave up updating analysis status after conflicts",
            extra={"correlation_id": context.correlation_id},
        )

    # -------------------------------------------------------------------------
    # Pipeline level
    # -------------------------------------------------------------------------

    async def _analyze_pipeline(self, context: AnalysisContext, pipeline: Pipeline) -> PipelineOutcome:
        context.check_cancelled()

        claim = await self._claim_scan(context, pipeline)
        if isinstance(claim, PipelineOutcome):
            return claim
        scan_log = claim

        try:
            return await self._run_scan(context, pipeline, scan_log)
        except AnalysisCancelledError:
            await self._cancel_scan(scan_log, "Analysis cancelled: lease lost or worker stopping")
            raise
        except asyncio.CancelledError:
            await self._cancel_scan(scan_log, "Analysis task cancelled")
            raise
        except ConcurrencyConflictError:
            logger.warning(
                "ScanLog taken over by another worker, abandoning pipeline",
                extra={
                    "correlation_id": context.correlation_id,
                    "pipeline_id": pipeline.id,
                    "scan_log_id": scan_log.id,
                },
            )
            return PipelineOutcome(
                pipeline_id=pipeline.id,
                pipeline_name=pipeline.name,
                status=PipelineResultStatus.IN_PROGRESS,
                scan_log_id=scan_log.id,
            )
        except (TransientError, PermanentError) as e:
            return await self._fail_scan(context, pipeline, scan_log, e)

    async def _claim_scan(
        self,
        context: AnalysisContext,
        pipeline: Pipeline,
    ) -> ScanLog | PipelineOutcome:
        """Claim the ScanLog of a pipeline, or explain why this worker must not run it."""
        logs = await self._call(
            context,
            "find scan logs",
            lambda: self._repository.find_scan_logs(
                context.tenant_id, context.correlation_id, pipeline.id
            ),
        )
        latest = logs[-1] if logs else None

        # Cancelled scans fall through to a fresh attempt
        if latest is not None and latest.status in (ScanStatus.SUCCESS, ScanStatus.FAILED):
            logger.info(
                "Pipeline already analysed for this correlation, skipping",
                extra={
                    "correlation_id": context.correlation_id,
                    "pipeline_id": pipeline.id,
                    "scan_log_id": latest.id,
                    "scan_status": latest.status.value,
                },
            )
            return PipelineOutcome(
                pipeline_id=pipeline.id,
                pipeline_name=pipeline.name,
                status=PipelineResultStatus.DUPLICATE,
                scan_log_id=latest.id,
                drift_count=latest.drift_count,
                overall_risk=latest.overall_risk,
                error=latest.error_message,
            )

        if latest is not None and latest.status == ScanStatus.RUNNING:
            age = (utcnow() - latest.started_at).total_seconds()
            if age < self._stale_scan_after:
                return self._in_progress(context, pipeline, latest)
            taken = dataclasses.replace(latest)
            taken.restart()
            try:
                claimed = await self._call(
                    context, "take over scan log", lambda: self._repository.update_scan_log(taken)
                )
            except ConcurrencyConflictError:
                return self._in_progress(context, pipeline, latest)
            logger.warning(
                "Took over abandoned scan",
                extra={
                    "correlation_id": context.correlation_id,
                    "pipeline_id": pipeline.id,
                    "scan_log_id": claimed.id,
                    "attempt": claimed.attempt,
                },
            )
            return claimed

        attempt = latest.attempt + 1 if latest is not None else 1
        scan_log = ScanLog.start(
            tenant_id=context.tenant_id,
            pipeline=pipeline,
            correlation_id=context.correlation_id,
            triggered_by=context.request.triggered_by,
            attempt=attempt,
        )
        try:
            return await self._call(
                context, "create scan log", lambda: self._repository.create_scan_log(scan_log)
            )
        except EntityExistsError:
            return self._in_progress(context, pipeline, scan_log)

    def _in_progress(
        self,
        context: AnalysisContext,
        pipeline: Pipeline,
        scan_log: ScanLog,
    ) -> PipelineOutcome:
        logger.info(
            "Pipeline is being analysed by another worker, skipping",
            extra={
                "correlation_id": context.correlation_id,
                "pipeline_id": pipeline.id,
                "scan_log_id": scan_log.id,
            },
        )
        return PipelineOutcome(
            pipeline_id=pipeline.id,
            pipeline_name=pipeline.name,
            status=PipelineResultStatus.IN_PROGRESS,
            scan_log_id=scan_log.id,
        )

    async def _run_scan(
        self,
        context: AnalysisContext,
        pipeline: Pipeline,
        scan_log: ScanLog,
    ) -> PipelineOutcome:
        expected = await self._call(
            context,
            "fetch expected resources",
            lambda: self._definitions.get_expected_resources(pipeline.id),
        )
        await self._progress(
            context, pipeline, ProgressStage.FETCH_EXPECTED,
            f"Loaded {len(expected)} expected resources",
        )

        observed = await self._call(
            context,
            "fetch observed resources",
            lambda: self._resources.get_resources_in_scope(
                pipeline.subscription_id, pipeline.resource_group
            ),
        )
        await self._progress(
            context, pipeline, ProgressStage.FETCH_OBSERVED,
            f"Read {len(observed)} deployed resources",
        )

        context.check_cancelled()
        result = self._engine.analyze(expected, observed)
        await self._progress(
            context, pipeline, ProgressStage.ANALYZING,
            f"Found {result.drift_count} drifts",
        )

        records = [DriftRecord.from_finding(scan_log, f) for f in result.findings]
        if records:
            await self._call(
                context, "persist findings", lambda: self._repository.save_findings(records)
            )

        completed = dataclasses.replace(scan_log)
        completed.complete(result)
        completed = await self._call(
            context, "complete scan log", lambda: self._repository.update_scan_log(completed)
        )
        await self._progress(
            context, pipeline, ProgressStage.PERSISTING,
            f"Persisted {len(records)} findings",
        )

        await self._record_pipeline_scan(context, completed)

        summary = result.to_summary_dict()
        summary["durationSeconds"] = int(completed.duration_seconds)
        await self._notifier.publish(
            context.tenant_id,
            CompletedEvent(
                correlation_id=context.correlation_id,
                pipeline_id=pipeline.id,
                pipeline_name=pipeline.name,
                tenant_id=context.tenant_id,
                summary=summary,
            ),
        )

        logger.info(
            "Pipeline analysis complete",
            extra={
                "correlation_id": context.correlation_id,
                "pipeline_id": pipeline.id,
                "scan_log_id": completed.id,
                "drift_count": result.drift_count,
                "overall_risk": result.overall_risk.value,
                "resources_scanned": result.resources_scanned,
                "duration_seconds": completed.duration_seconds,
            },
        )
        return PipelineOutcome(
            pipeline_id=pipeline.id,
            pipeline_name=pipeline.name,
            status=PipelineResultStatus.SUCCESS,
            scan_log_id=completed.id,
            drift_count=result.drift_count,
            overall_risk=result.overall_risk,
            result=result,
        )

    async def _fail_scan(
        self,
        context: AnalysisContext,
        pipeline: Pipeline,
        scan_log: ScanLog,
        error: DriftWatchError,
    ) -> PipelineOutcome:
        logger.error(
            "Pipeline analysis failed",
            extra={
                "correlation_id": context.correlation_id,
                "pipeline_id": pipeline.id,
                "scan_log_id": scan_log.id,
                "error": error.message,
                "error_type": type(error).__name__,
            },
        )

        failed = dataclasses.replace(scan_log)
        failed.fail(error.message)
        try:
            failed = await self._call(
                context, "fail scan log", lambda: self._repository.update_scan_log(failed)
            )
            await self._record_pipeline_scan(context, failed)
        except (TransientError, ConcurrencyConflictError) as e:
            # The RUNNING log goes stale and the next delivery takes it over
            logger.error(
                "Could not record failed scan",
                extra={
                    "correlation_id": context.correlation_id,
                    "scan_log_id": scan_log.id,
                    "error": e.message,
                },
            )

        await self._notifier.publish(
            context.tenant_id,
            FailedEvent(
                correlation_id=context.correlation_id,
                pipeline_id=pipeline.id,
                pipeline_name=pipeline.name,
                tenant_id=context.tenant_id,
                error=error.message,
            ),
        )
        return PipelineOutcome(
            pipeline_id=pipeline.id,
            pipeline_name=pipeline.name,
            status=PipelineResultStatus.FAILED,
            scan_log_id=scan_log.id,
            error=error.message,
        )

    async def _cancel_scan(self, scan_log: ScanLog, reason: str) -> None:
        """Mark a ScanLog cancelled. Best effort, shielded from the cancellation itself."""
        cancelled = dataclasses.replace(scan_log)
        cancelled.cancel(reason)
        try:
            await asyncio.shield(
                asyncio.wait_for(
                    self._repository.update_scan_log(cancelled),
                    timeout=CANCEL_WRITE_TIMEOUT_SECONDS,
                )
            )
        except (DriftWatchError, TimeoutError) as e:
            logger.warning(
                "Could not mark scan cancelled",
                extra={
                    "correlation_id": scan_log.correlation_id,
                    "scan_log_id": scan_log.id,
                    "error": str(e),
                },
            )
        else:
            logger.info(
                "Scan cancelled",
                extra={
                    "correlation_id": scan_log.correlation_id,
                    "scan_log_id": scan_log.id,
                    "reason": reason,
                },
            )

    async def _record_pipeline_scan(self, context: AnalysisContext, scan_log: ScanLog) -> None:
        # Pipeline statistics are informational, a failure here never fails the scan
        try:
            await self._call(
                context,
                "record pipeline scan",
                lambda: self._repository.record_pipeline_scan(scan_log),
            )
        except (TransientError, ConcurrencyConflictError) as e:
            logger.warning(
                "Could not record scan on pipeline",
                extra={
                    "correlation_id": context.correlation_id,
                    "pipeline_id": scan_log.pipeline_id,
                    "error": e.message,
                },
            )

    async def _progress(
        self,
        context: AnalysisContext,
        pipeline: Pipeline,
        stage: ProgressStage,
        message: str,
    ) -> None:
        await self._notifier.publish(
            context.tenant_id,
            ProgressEvent(
                correlation_id=context.correlation_id,
                pipeline_id=pipeline.id,
                pipeline_name=pipeline.name,
                tenant_id=context.tenant_id,
                stage=stage,
                message=message,
            ),
        )

    # -------------------------------------------------------------------------
    # Collaborator calls
    # -------------------------------------------------------------------------

    async def _call(
        self,
        context: AnalysisContext,
        operation: str,
        factory: Callable[[], Awaitable[T]],
    ) -> T:
        """Call a collaborator with timeout, cancellation and transient retry.

        Raises:
            TransientError: If every attempt failed transiently.
            AnalysisCancelledError: If the context was cancelled.
        """
        for attempt in range(1, self._fetch_max_attempts + 1):
            try:
                return await context.run(self._with_timeout(operation, factory()))
            except TransientError as e:
                if attempt >= self._fetch_max_attempts:
                    raise

                # Exponential backoff with jitter
                backoff = self._backoff_base * (2 ** (attempt - 1))
                if isinstance(e, ThrottledError) and e.retry_after_seconds:
                    backoff = max(backoff, e.retry_after_seconds)
                jitter = random.uniform(0, backoff * 0.2)
                wait_time = backoff + jitter

                logger.warning(
                    "Collaborator call failed, retrying",
                    extra={
                        "correlation_id": context.correlation_id,
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": self._fetch_max_attempts,
                        "wait_seconds": wait_time,
                        "error": e.message,
                    },
                )
                await context.sleep(wait_time)

        raise AssertionError("Retry loop exited without result")

    async def _with_timeout(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except TimeoutError as e:
            raise CollaboratorTimeoutError(operation, self._timeout) from e

    def _log_outcome(self, outcome: AnalysisOutcome) -> None:
        """Log the request outcome with structured data."""
        extra: dict[str, Any] = {
            "correlation_id": outcome.correlation_id,
            "tenant_id": outcome.tenant_id,
            "status": outcome.status.value,
            "duration_seconds": outcome.duration_seconds,
            "pipelines": len(outcome.pipelines),
            "pipelines_failed": outcome.failed_count,
            "drift_count": outcome.drift_count,
            "overall_risk": outcome.overall_risk.value,
        }

        if outcome.status == OutcomeStatus.NOT_FOUND:
            extra["error"] = outcome.error
            logger.warning("Analysis target not found", extra=extra)
        elif outcome.failed_count:
            logger.warning("Analysis completed with failed pipelines", extra=extra)
        else:
            logger.info("Analysis completed", extra=extra)
