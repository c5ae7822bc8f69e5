"""In-memory analysis repository.

Implements the AnalysisRepository port with the same key and etag
semantics as the Table Storage implementation. Used for local runs
(REPOSITORY_BACKEND=memory) and as the store in tests.

Entities are deep-copied on the way in and out so callers can never
mutate stored state without going through a conditional write.
"""

from __future__ import annotations

import copy
import uuid
from typing import TypeVar

from .domain import AnalysisStatus, DriftRecord, Pipeline, ScanLog
from .errors import ConcurrencyConflictError, EntityExistsError

E = TypeVar("E", Pipeline, ScanLog, DriftRecord, AnalysisStatus)


def new_etag() -> str:
    return f'W/"{uuid.uuid4().hex}"'


class InMemoryRepository:
    """Dictionary-backed repository keyed by (tenant_id, id)."""

    def __init__(self) -> None:
        self._pipelines: dict[tuple[str, str], Pipeline] = {}
        self._scan_logs: dict[tuple[str, str], ScanLog] = {}
        self._findings: dict[tuple[str, str], DriftRecord] = {}
        self._statuses: dict[tuple[str, str], AnalysisStatus] = {}

    # -------------------------------------------------------------------------
    # Pipelines
    # -------------------------------------------------------------------------

    async def get_pipeline(self, tenant_id: str, pipeline_id: str) -> Pipeline | None:
        pipeline = self._pipelines.get((tenant_id, pipeline_id))
        return copy.deepcopy(pipeline)

    async def list_active_pipelines(self, tenant_id: str) -> list[Pipeline]:
        pipelines = [
            p for (tenant, _), p in self._pipelines.items() if tenant == tenant_id and p.is_active
        ]
        return [copy.deepcopy(p) for p in sorted(pipelines, key=lambda p: p.id)]

    async def save_pipeline(self, pipeline: Pipeline) -> Pipeline:
        key = (pipeline.tenant_id, pipeline.id)
        current = self._pipelines.get(key)
        if current is not None and pipeline.etag is not None and current.etag != pipeline.etag:
            raise ConcurrencyConflictError("Pipeline", pipeline.id)
        return self._store(self._pipelines, key, pipeline)

    async def record_pipeline_scan(self, scan_log: ScanLog) -> Pipeline | None:
        pipeline = self._pipelines.get((scan_log.tenant_id, scan_log.pipeline_id))
        if pipeline is None:
            return None
        updated = copy.deepcopy(pipeline)
        updated.record_scan(scan_log)
        return self._store(self._pipelines, (updated.tenant_id, updated.id), updated)

    # -------------------------------------------------------------------------
    # Scan logs
    # -------------------------------------------------------------------------

    async def create_scan_log(self, scan_log: ScanLog) -> ScanLog:
        key = (scan_log.tenant_id, scan_log.id)
        if key in self._scan_logs:
            raise EntityExistsError("ScanLog", scan_log.id, correlation_id=scan_log.correlation_id)
        return self._store(self._scan_logs, key, scan_log)

    async def update_scan_log(self, scan_log: ScanLog) -> ScanLog:
        key = (scan_log.tenant_id, scan_log.id)
        current = self._scan_logs.get(key)
        if current is None or current.etag != scan_log.etag:
            raise ConcurrencyConflictError(
                "ScanLog", scan_log.id, correlation_id=scan_log.correlation_id
            )
        return self._store(self._scan_logs, key, scan_log)

    async def find_scan_logs(
        self,
        tenant_id: str,
        correlation_id: str,
        pipeline_id: str | None = None,
    ) -> list[ScanLog]:
        logs = [
            log
            for (tenant, _), log in self._scan_logs.items()
            if tenant == tenant_id
            and log.correlation_id == correlation_id
            and (pipeline_id is None or log.pipeline_id == pipeline_id)
        ]
        logs.sort(key=lambda log: (log.pipeline_id, log.attempt))
        return [copy.deepcopy(log) for log in logs]

    # -------------------------------------------------------------------------
    # Findings
    # -------------------------------------------------------------------------

    async def save_findings(self, records: list[DriftRecord]) -> None:
        for record in records:
            self._store(self._findings, (record.tenant_id, record.id), record)

    async def list_findings(self, tenant_id: str, scan_log_id: str) -> list[DriftRecord]:
        records = [
            r
            for (tenant, _), r in self._findings.items()
            if tenant == tenant_id and r.scan_log_id == scan_log_id
        ]
        records.sort(
            key=lambda r: (
                r.finding.resource_type.lower(),
                r.finding.resource_name.lower(),
                r.finding.property,
            )
        )
        return [copy.deepcopy(r) for r in records]

    async def list_findings_for_correlation(
        self,
        tenant_id: str,
        correlation_id: str,
    ) -> list[DriftRecord]:
        return [
            copy.deepcopy(r)
            for (tenant, _), r in self._findings.items()
            if tenant == tenant_id and r.correlation_id == correlation_id
        ]

    # -------------------------------------------------------------------------
    # Analysis status
    # -------------------------------------------------------------------------

    async def get_analysis_status(
        self,
        tenant_id: str,
        correlation_id: str,
    ) -> AnalysisStatus | None:
        return copy.deepcopy(self._statuses.get((tenant_id, correlation_id)))

    async def save_analysis_status(self, status: AnalysisStatus) -> AnalysisStatus:
        key = (status.tenant_id, status.correlation_id)
        current = self._statuses.get(key)
        if status.etag is None:
            if current is not None:
                raise EntityExistsError(
                    "AnalysisStatus", status.correlation_id, correlation_id=status.correlation_id
                )
        elif current is None or current.etag != status.etag:
            raise ConcurrencyConflictError(
                "AnalysisStatus", status.correlation_id, correlation_id=status.correlation_id
            )
        return self._store(self._statuses, key, status)

    @staticmethod
    def _store(table: dict[tuple[str, str], E], key: tuple[str, str], entity: E) -> E:
        stored = copy.deepcopy(entity)
        stored.etag = new_etag()
        table[key] = stored
        return copy.deepcopy(stored)
