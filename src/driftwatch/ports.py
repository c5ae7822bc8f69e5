"""Collaborator port interfaces (Protocols) for the analysis pipeline.

These define the contracts the orchestrator consumes. Using Protocol
instead of ABC allows structural subtyping: any object with the right
async methods plugs in, including the test fakes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from .domain import AnalysisStatus, DriftRecord, ObservedResource, Pipeline, ScanLog
from .models import ExpectedResource

if TYPE_CHECKING:
    from .notifier import NotificationEvent


class DefinitionSource(Protocol):
    """IaC definition source port."""

    async def get_expected_resources(self, pipeline_id: str) -> list[ExpectedResource]:
        """Return the already-extracted expected resources of a pipeline.

        Raises:
            DefinitionNotFoundError: If the pipeline has no definitions.
            SourceUnavailableError: If the source cannot be reached (retryable).
            MalformedDataError: If the definitions cannot be parsed.
        """
        ...


class ResourceReader(Protocol):
    """Live Azure resource reader port."""

    async def get_resources_in_scope(
        self,
        subscription_id: str,
        resource_group: str,
    ) -> list[ObservedResource]:
        """Return every resource deployed in a resource group.

        Raises:
            ResourceAuthError: If the identity may not read the scope.
            ThrottledError: If the API throttled or failed transiently (retryable).
        """
        ...


class AnalysisRepository(Protocol):
    """Pipeline, scan log, finding and analysis status persistence port.

    All writes are idempotent under their entity keys. Updates of entities
    carrying an etag are conditional on that etag.
    """

    async def get_pipeline(self, tenant_id: str, pipeline_id: str) -> Pipeline | None:
        ...

    async def list_active_pipelines(self, tenant_id: str) -> list[Pipeline]:
        ...

    async def save_pipeline(self, pipeline: Pipeline) -> Pipeline:
        """Insert or replace a pipeline.

        Raises:
            ConcurrencyConflictError: If the pipeline carries a stale etag.
        """
        ...

    async def record_pipeline_scan(self, scan_log: ScanLog) -> Pipeline | None:
        """Record a terminal scan on its pipeline (last scan time, drift count).

        Returns None when the pipeline no longer exists.
        """
        ...

    async def create_scan_log(self, scan_log: ScanLog) -> ScanLog:
        """Insert a new scan log and return it with its etag.

        Raises:
            EntityExistsError: If a scan log with the same key exists.
        """
        ...

    async def update_scan_log(self, scan_log: ScanLog) -> ScanLog:
        """Replace a scan log if its etag still matches.

        Raises:
            ConcurrencyConflictError: If the stored scan log changed meanwhile.
        """
        ...

    async def find_scan_logs(
        self,
        tenant_id: str,
        correlation_id: str,
        pipeline_id: str | None = None,
    ) -> list[ScanLog]:
        """Scan logs of a correlation (secondary index), oldest attempt first."""
        ...

    async def save_findings(self, records: list[DriftRecord]) -> None:
        """Upsert a batch of findings. Re-saving the same batch is a no-op."""
        ...

    async def list_findings(self, tenant_id: str, scan_log_id: str) -> list[DriftRecord]:
        ...

    async def list_findings_for_correlation(
        self,
        tenant_id: str,
        correlation_id: str,
    ) -> list[DriftRecord]:
        """Findings of every scan of a request."""
        ...

    async def get_analysis_status(
        self,
        tenant_id: str,
        correlation_id: str,
    ) -> AnalysisStatus | None:
        ...

    async def save_analysis_status(self, status: AnalysisStatus) -> AnalysisStatus:
        """Insert (no etag) or conditionally replace (etag) an analysis status.

        Raises:
            EntityExistsError: On insert when the status already exists.
            ConcurrencyConflictError: On replace with a stale etag.
        """
        ...


class Notifier(Protocol):
    """Notification transport port. Best effort, no delivery contract."""

    async def publish(self, tenant_id: str, event: NotificationEvent) -> None:
        ...
