"""Exception taxonomy for the drift-analysis pipeline.

Every error raised by a collaborator or by the pipeline itself falls into
one of four families, and each family has exactly one handling policy:

- Malformed: the queue message cannot be understood. Dead-letter it now,
  never retry.
- Transient: timeouts, throttling, unavailable stores. Retry with backoff
  up to a bounded attempt count, then mark the scan failed.
- Permanent: auth failures, malformed collaborator data, missing
  pipelines or definitions. Fail the unit of work immediately.
- Fatal: contract violations such as a missing classifier rule table.
  Propagate and crash the worker so drift checks are never silently skipped.
"""

from __future__ import annotations


class DriftWatchError(Exception):
    """Base class for all pipeline errors.

    Attributes:
        correlation_id: Correlation ID of the analysis, when known.
    """

    def __init__(self, message: str, correlation_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.correlation_id = correlation_id


class MalformedMessageError(DriftWatchError):
    """Raised when a queue message does not have the AnalysisRequest shape."""

    pass


# =============================================================================
# Transient
# =============================================================================


class TransientError(DriftWatchError):
    """Retryable failure of a collaborator call."""

    pass


class ThrottledError(TransientError):
    """The live resource reader was throttled (HTTP 429 or 5xx)."""

    def __init__(
        self,
        message: str,
        retry_after_seconds: float | None = None,
        correlation_id: str | None = None,
    ) -> None:
        super().__init__(message, correlation_id=correlation_id)
        self.retry_after_seconds = retry_after_seconds


class SourceUnavailableError(TransientError):
    """The IaC definition source could not be reached."""

    pass


class RepositoryUnavailableError(TransientError):
    """The scan/drift store could not be reached."""

    pass


class CollaboratorTimeoutError(TransientError):
    """A collaborator call exceeded its timeout."""

    def __init__(
        self,
        operation: str,
        timeout_seconds: float,
        correlation_id: str | None = None,
    ) -> None:
        super().__init__(
            f"{operation} timed out after {timeout_seconds}s",
            correlation_id=correlation_id,
        )
        self.operation = operation
        self.timeout_seconds = timeout_seconds


# =============================================================================
# Permanent
# =============================================================================


class PermanentError(DriftWatchError):
    """Non-retryable failure of one unit of work."""

    pass


class ResourceAuthError(PermanentError):
    """The managed identity is not allowed to read the pipeline scope."""

    pass


class MalformedDataError(PermanentError):
    """A collaborator returned data that cannot be interpreted."""

    pass


class DefinitionNotFoundError(PermanentError):
    """No expected resource definitions exist for a pipeline."""

    def __init__(self, pipeline_id: str, correlation_id: str | None = None) -> None:
        super().__init__(
            f"No resource definitions found for pipeline: {pipeline_id}",
            correlation_id=correlation_id,
        )
        self.pipeline_id = pipeline_id


class PipelineNotFoundError(PermanentError):
    """The requested pipeline does not exist for the tenant."""

    def __init__(
        self,
        tenant_id: str,
        pipeline_id: str,
        correlation_id: str | None = None,
    ) -> None:
        super().__init__(
            f"Pipeline not found: {pipeline_id} (tenant {tenant_id})",
            correlation_id=correlation_id,
        )
        self.tenant_id = tenant_id
        self.pipeline_id = pipeline_id


# =============================================================================
# Store consistency
# =============================================================================


class ConcurrencyConflictError(DriftWatchError):
    """A conditional update lost against a newer version of the entity."""

    def __init__(self, entity: str, key: str, correlation_id: str | None = None) -> None:
        super().__init__(
            f"{entity} {key} was modified concurrently",
            correlation_id=correlation_id,
        )
        self.entity = entity
        self.key = key


class EntityExistsError(DriftWatchError):
    """An insert collided with an existing entity key."""

    def __init__(self, entity: str, key: str, correlation_id: str | None = None) -> None:
        super().__init__(f"{entity} {key} already exists", correlation_id=correlation_id)
        self.entity = entity
        self.key = key


# =============================================================================
# Cancellation
# =============================================================================


class AnalysisCancelledError(DriftWatchError):
    """The analysis was cancelled because its lease was lost or the worker is stopping."""

    pass


# =============================================================================
# Fatal
# =============================================================================


class FatalError(DriftWatchError):
    """Contract violation. The worker process must stop."""

    pass


class ClassifierConfigurationError(FatalError):
    """The classification rule table is missing or unusable."""

    pass


class InvalidScanTransitionError(FatalError):
    """A terminal ScanLog was asked to transition again."""

    def __init__(self, scan_log_id: str, from_status: str, to_status: str) -> None:
        super().__init__(
            f"ScanLog {scan_log_id} cannot move from {from_status} to {to_status}"
        )
        self.scan_log_id = scan_log_id
        self.from_status = from_status
        self.to_status = to_status
