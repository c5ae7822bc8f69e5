"""Azure Table Storage analysis repository.

Persists pipelines, scan logs, drift records and analysis statuses in four
tables. Every entity uses PartitionKey = tenant ID and RowKey = entity ID,
so all queries of a request stay inside one partition.

Conversions between domain objects and table entities are explicit, one
pair of functions per entity type.

CONSISTENCY:
- Inserts use create_entity and collide on duplicate keys (EntityExistsError)
- Updates carrying an etag use MatchConditions.IfNotModified
  (ConcurrencyConflictError when the entity changed meanwhile)
- Finding batches are upserted in per-partition transactions of at most 100
  operations, so re-persisting the same batch overwrites instead of duplicating
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from azure.core import MatchConditions
from azure.core.credentials_async import AsyncTokenCredential
from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceExistsError,
    ResourceModifiedError,
    ResourceNotFoundError,
)
from azure.data.tables import TableEntity, TableTransactionError, UpdateMode
from azure.data.tables.aio import TableClient, TableServiceClient

from .domain import (
    AnalysisState,
    AnalysisStatus,
    Category,
    DriftFinding,
    DriftRecord,
    FindingStatus,
    MismatchKind,
    Pipeline,
    PipelineStatus,
    ScanLog,
    ScanStatus,
    Severity,
)
from .errors import (
    ConcurrencyConflictError,
    EntityExistsError,
    MalformedDataError,
    RepositoryUnavailableError,
)

logger = logging.getLogger(__name__)

PIPELINES_TABLE = "Pipelines"
SCAN_LOGS_TABLE = "ScanLogs"
DRIFT_RECORDS_TABLE = "DriftRecords"
ANALYSIS_STATUS_TABLE = "AnalysisStatus"

# Table Storage entity group transaction limit
MAX_BATCH_OPERATIONS = 100

_RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


@contextmanager
def _translate_errors(entity: str, key: str, correlation_id: str | None = None) -> Iterator[None]:
    """Map Azure SDK errors onto the repository error taxonomy."""
    try:
        yield
    except ResourceExistsError as e:
        raise EntityExistsError(entity, key, correlation_id=correlation_id) from e
    except (ResourceModifiedError, ResourceNotFoundError) as e:
        # A conditional update against a vanished entity is also a lost race
        raise ConcurrencyConflictError(entity, key, correlation_id=correlation_id) from e
    except HttpResponseError as e:
        if e.status_code == 412:
            raise ConcurrencyConflictError(entity, key, correlation_id=correlation_id) from e
        if e.status_code in _RETRYABLE_STATUS_CODES or e.status_code is None:
            raise RepositoryUnavailableError(
                f"Table Storage unavailable for {entity} {key}: {e.message}",
                correlation_id=correlation_id,
            ) from e
        raise MalformedDataError(
            f"Table Storage rejected {entity} {key}: {e.message}",
            correlation_id=correlation_id,
        ) from e
    except AzureError as e:
        raise RepositoryUnavailableError(
            f"Table Storage unavailable for {entity} {key}: {e}",
            correlation_id=correlation_id,
        ) from e


def _as_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _etag(entity: TableEntity | dict[str, Any]) -> str | None:
    metadata = getattr(entity, "metadata", None) or {}
    return metadata.get("etag") or entity.get("etag")


def _without_none(entity: dict[str, Any]) -> dict[str, Any]:
    # Table Storage cannot store null properties
    return {k: v for k, v in entity.items() if v is not None}


# =============================================================================
# Entity conversions
# =============================================================================


def pipeline_to_entity(pipeline: Pipeline) -> dict[str, Any]:
    return _without_none(
        {
            "PartitionKey": pipeline.tenant_id,
            "RowKey": pipeline.id,
            "Name": pipeline.name,
            "SubscriptionId": pipeline.subscription_id,
            "ResourceGroup": pipeline.resource_group,
            "Status": pipeline.status.value,
            "Organization": pipeline.organization,
            "Project": pipeline.project,
            "RepositoryId": pipeline.repository_id,
            "Branch": pipeline.branch,
            "TerraformPath": pipeline.terraform_path,
            "LastScanAt": pipeline.last_scan_at,
            "LastScanCorrelationId": pipeline.last_scan_correlation_id,
            "DriftCount": pipeline.drift_count,
        }
    )


def pipeline_from_entity(entity: TableEntity | dict[str, Any]) -> Pipeline:
    return Pipeline(
        id=entity["RowKey"],
        tenant_id=entity["PartitionKey"],
        name=entity.get("Name", ""),
        subscription_id=entity.get("SubscriptionId", ""),
        resource_group=entity.get("ResourceGroup", ""),
        status=PipelineStatus(entity.get("Status", PipelineStatus.ACTIVE.value)),
        organization=entity.get("Organization", ""),
        project=entity.get("Project", ""),
        repository_id=entity.get("RepositoryId", ""),
        branch=entity.get("Branch", "main"),
        terraform_path=entity.get("TerraformPath", ""),
        last_scan_at=_as_datetime(entity.get("LastScanAt")),
        last_scan_correlation_id=entity.get("LastScanCorrelationId"),
        drift_count=int(entity.get("DriftCount", 0)),
        etag=_etag(entity),
    )


def scan_log_to_entity(scan_log: ScanLog) -> dict[str, Any]:
    return _without_none(
        {
            "PartitionKey": scan_log.tenant_id,
            "RowKey": scan_log.id,
            "PipelineId": scan_log.pipeline_id,
            "PipelineName": scan_log.pipeline_name,
            "CorrelationId": scan_log.correlation_id,
            "TriggeredBy": scan_log.triggered_by,
            "Attempt": scan_log.attempt,
            "Status": scan_log.status.value,
            "StartedAt": scan_log.started_at,
            "CompletedAt": scan_log.completed_at,
            "DriftCount": scan_log.drift_count,
            "ResourcesScanned": scan_log.resources_scanned,
            "DurationSeconds": float(scan_log.duration_seconds),
            "OverallRisk": scan_log.overall_risk.value,
            "ErrorMessage": scan_log.error_message,
        }
    )


def scan_log_from_entity(entity: TableEntity | dict[str, Any]) -> ScanLog:
    return ScanLog(
        tenant_id=entity["PartitionKey"],
        id=entity["RowKey"],
        pipeline_id=entity["PipelineId"],
        pipeline_name=entity.get("PipelineName", ""),
        correlation_id=entity["CorrelationId"],
        triggered_by=entity.get("TriggeredBy", ""),
        attempt=int(entity.get("Attempt", 1)),
        status=ScanStatus(entity["Status"]),
        started_at=_as_datetime(entity.get("StartedAt")) or datetime.now(UTC),
        completed_at=_as_datetime(entity.get("CompletedAt")),
        drift_count=int(entity.get("DriftCount", 0)),
        resources_scanned=int(entity.get("ResourcesScanned", 0)),
        duration_seconds=float(entity.get("DurationSeconds", 0.0)),
        overall_risk=Severity(entity.get("OverallRisk", Severity.NONE.value)),
        error_message=entity.get("ErrorMessage"),
        etag=_etag(entity),
    )


def drift_record_to_entity(record: DriftRecord) -> dict[str, Any]:
    finding = record.finding
    return {
        "PartitionKey": record.tenant_id,
        "RowKey": record.id,
        "PipelineId": record.pipeline_id,
        "CorrelationId": record.correlation_id,
        "ScanLogId": record.scan_log_id,
        "ResourceId": finding.resource_id,
        "ResourceType": finding.resource_type,
        "ResourceName": finding.resource_name,
        "Property": finding.property,
        "ExpectedValue": finding.expected_value,
        "ActualValue": finding.actual_value,
        "Severity": finding.severity.value,
        "Category": finding.category.value,
        "Description": finding.description,
        "Recommendation": finding.recommendation,
        "MismatchKind": finding.mismatch_kind.value,
        "Status": record.status.value,
        "DetectedAt": record.detected_at,
    }


def drift_record_from_entity(entity: TableEntity | dict[str, Any]) -> DriftRecord:
    finding = DriftFinding(
        resource_id=entity["ResourceId"],
        resource_type=entity["ResourceType"],
        resource_name=entity["ResourceName"],
        property=entity["Property"],
        expected_value=entity.get("ExpectedValue", ""),
        actual_value=entity.get("ActualValue", ""),
        severity=Severity(entity["Severity"]),
        category=Category(entity["Category"]),
        description=entity.get("Description", ""),
        recommendation=entity.get("Recommendation", ""),
        mismatch_kind=MismatchKind(entity.get("MismatchKind", MismatchKind.VALUE_MISMATCH.value)),
    )
    return DriftRecord(
        id=entity["RowKey"],
        tenant_id=entity["PartitionKey"],
        pipeline_id=entity["PipelineId"],
        correlation_id=entity["CorrelationId"],
        scan_log_id=entity["ScanLogId"],
        finding=finding,
        status=FindingStatus(entity.get("Status", FindingStatus.NEW.value)),
        detected_at=_as_datetime(entity.get("DetectedAt")) or datetime.now(UTC),
        etag=_etag(entity),
    )


def analysis_status_to_entity(status: AnalysisStatus) -> dict[str, Any]:
    return _without_none(
        {
            "PartitionKey": status.tenant_id,
            "RowKey": status.correlation_id,
            "Status": status.status.value,
            "CreatedAt": status.created_at,
            "StartedAt": status.started_at,
            "CompletedAt": status.completed_at,
            "DriftCount": status.drift_count,
            "OverallRisk": status.overall_risk.value,
            "ErrorMessage": status.error_message,
        }
    )


def analysis_status_from_entity(entity: TableEntity | dict[str, Any]) -> AnalysisStatus:
    return AnalysisStatus(
        correlation_id=entity["RowKey"],
        tenant_id=entity["PartitionKey"],
        status=AnalysisState(entity["Status"]),
        created_at=_as_datetime(entity.get("CreatedAt")) or datetime.now(UTC),
        started_at=_as_datetime(entity.get("StartedAt")),
        completed_at=_as_datetime(entity.get("CompletedAt")),
        drift_count=int(entity.get("DriftCount", 0)),
        overall_risk=Severity(entity.get("OverallRisk", Severity.NONE.value)),
        error_message=entity.get("ErrorMessage"),
        etag=_etag(entity),
    )


# =============================================================================
# Repository
# =============================================================================


class TableStorageRepository:
    """AnalysisRepository backed by Azure Table Storage (async SDK)."""

    def __init__(self, service: TableServiceClient) -> None:
        self._service = service
        self._pipelines: TableClient = service.get_table_client(PIPELINES_TABLE)
        self._scan_logs: TableClient = service.get_table_client(SCAN_LOGS_TABLE)
        self._findings: TableClient = service.get_table_client(DRIFT_RECORDS_TABLE)
        self._statuses: TableClient = service.get_table_client(ANALYSIS_STATUS_TABLE)

    @classmethod
    def from_endpoint(cls, endpoint: str, credential: AsyncTokenCredential) -> TableStorageRepository:
        return cls(TableServiceClient(endpoint=endpoint, credential=credential))

    @classmethod
    def from_connection_string(cls, connection_string: str) -> TableStorageRepository:
        return cls(TableServiceClient.from_connection_string(conn_str=connection_string))

    async def open(self) -> None:
        """Create the tables if they do not exist yet."""
        for table in (PIPELINES_TABLE, SCAN_LOGS_TABLE, DRIFT_RECORDS_TABLE, ANALYSIS_STATUS_TABLE):
            with _translate_errors("Table", table):
                await self._service.create_table_if_not_exists(table_name=table)
        logger.info("Table Storage repository ready", extra={"account": self._service.account_name})

    async def close(self) -> None:
        for client in (self._pipelines, self._scan_logs, self._findings, self._statuses):
            await client.close()
        await self._service.close()

    # -------------------------------------------------------------------------
    # Pipelines
    # -------------------------------------------------------------------------

    async def get_pipeline(self, tenant_id: str, pipeline_id: str) -> Pipeline | None:
        with _translate_errors("Pipeline", pipeline_id):
            try:
                entity = await self._pipelines.get_entity(
                    partition_key=tenant_id, row_key=pipeline_id
                )
            except ResourceNotFoundError:
                return None
        return pipeline_from_entity(entity)

    async def list_active_pipelines(self, tenant_id: str) -> list[Pipeline]:
        pipelines: list[Pipeline] = []
        with _translate_errors("Pipeline", f"{tenant_id}/*"):
            async for entity in self._pipelines.query_entities(
                query_filter="PartitionKey eq @tenant and Status eq @status",
                parameters={"tenant": tenant_id, "status": PipelineStatus.ACTIVE.value},
            ):
                pipelines.append(pipeline_from_entity(entity))
        return sorted(pipelines, key=lambda p: p.id)

    async def save_pipeline(self, pipeline: Pipeline) -> Pipeline:
        entity = pipeline_to_entity(pipeline)
        with _translate_errors("Pipeline", pipeline.id):
            if pipeline.etag is None:
                metadata = await self._pipelines.upsert_entity(entity=entity, mode=UpdateMode.REPLACE)
            else:
                metadata = await self._pipelines.update_entity(
                    entity=entity,
                    mode=UpdateMode.REPLACE,
                    etag=pipeline.etag,
                    match_condition=MatchConditions.IfNotModified,
                )
        return pipeline_from_entity({**entity, "etag": metadata.get("etag")})

    async def record_pipeline_scan(self, scan_log: ScanLog) -> Pipeline | None:
        pipeline = await self.get_pipeline(scan_log.tenant_id, scan_log.pipeline_id)
        if pipeline is None:
            return None
        pipeline.record_scan(scan_log)
        entity = {
            "PartitionKey": pipeline.tenant_id,
            "RowKey": pipeline.id,
            "LastScanAt": pipeline.last_scan_at,
            "LastScanCorrelationId": pipeline.last_scan_correlation_id,
            "DriftCount": pipeline.drift_count,
        }
        # Merge so concurrent edits of other pipeline fields are kept
        with _translate_errors("Pipeline", pipeline.id, scan_log.correlation_id):
            metadata = await self._pipelines.update_entity(entity=entity, mode=UpdateMode.MERGE)
        pipeline.etag = metadata.get("etag")
        return pipeline

    # -------------------------------------------------------------------------
    # Scan logs
    # -------------------------------------------------------------------------

    async def create_scan_log(self, scan_log: ScanLog) -> ScanLog:
        entity = scan_log_to_entity(scan_log)
        with _translate_errors("ScanLog", scan_log.id, scan_log.correlation_id):
            metadata = await self._scan_logs.create_entity(entity=entity)
        return scan_log_from_entity({**entity, "etag": metadata.get("etag")})

    async def update_scan_log(self, scan_log: ScanLog) -> ScanLog:
        if scan_log.etag is None:
            raise ConcurrencyConflictError(
                "ScanLog", scan_log.id, correlation_id=scan_log.correlation_id
            )
        entity = scan_log_to_entity(scan_log)
        with _translate_errors("ScanLog", scan_log.id, scan_log.correlation_id):
            metadata = await self._scan_logs.update_entity(
                entity=entity,
                mode=UpdateMode.REPLACE,
                etag=scan_log.etag,
                match_condition=MatchConditions.IfNotModified,
            )
        return scan_log_from_entity({**entity, "etag": metadata.get("etag")})

    async def find_scan_logs(
        self,
        tenant_id: str,
        correlation_id: str,
        pipeline_id: str | None = None,
    ) -> list[ScanLog]:
        query = "PartitionKey eq @tenant and CorrelationId eq @correlation"
        parameters = {"tenant": tenant_id, "correlation": correlation_id}
        if pipeline_id is not None:
            query += " and PipelineId eq @pipeline"
            parameters["pipeline"] = pipeline_id

        logs: list[ScanLog] = []
        with _translate_errors("ScanLog", f"{tenant_id}/{correlation_id}", correlation_id):
            async for entity in self._scan_logs.query_entities(
                query_filter=query, parameters=parameters
            ):
                logs.append(scan_log_from_entity(entity))
        logs.sort(key=lambda log: (log.pipeline_id, log.attempt))
        return logs

    # -------------------------------------------------------------------------
    # Findings
    # -------------------------------------------------------------------------

    async def save_findings(self, records: list[DriftRecord]) -> None:
        # One entity per RowKey; a batch rejects duplicates and the last write wins
        unique = list({record.id: record for record in records}.values())
        if len(unique) < len(records):
            logger.warning(
                "Dropped duplicate findings before persisting",
                extra={"count": len(records), "unique": len(unique)},
            )

        by_partition: dict[str, list[dict[str, Any]]] = {}
        for record in unique:
            by_partition.setdefault(record.tenant_id, []).append(drift_record_to_entity(record))

        for tenant_id, entities in by_partition.items():
            for start in range(0, len(entities), MAX_BATCH_OPERATIONS):
                chunk = entities[start : start + MAX_BATCH_OPERATIONS]
                operations = [("upsert", e, {"mode": UpdateMode.REPLACE}) for e in chunk]
                try:
                    with _translate_errors("DriftRecord", f"{tenant_id}/batch"):
                        await self._findings.submit_transaction(operations)
                except TableTransactionError as e:
                    raise RepositoryUnavailableError(
                        f"Finding batch rejected for tenant {tenant_id}: {e}"
                    ) from e

        logger.debug("Persisted findings", extra={"count": len(unique)})

    async def list_findings(self, tenant_id: str, scan_log_id: str) -> list[DriftRecord]:
        records: list[DriftRecord] = []
        with _translate_errors("DriftRecord", f"{tenant_id}/{scan_log_id}"):
            async for entity in self._findings.query_entities(
                query_filter="PartitionKey eq @tenant and ScanLogId eq @scan",
                parameters={"tenant": tenant_id, "scan": scan_log_id},
            ):
                records.append(drift_record_from_entity(entity))
        records.sort(
            key=lambda r: (
                r.finding.resource_type.lower(),
                r.finding.resource_name.lower(),
                r.finding.property,
            )
        )
        return records

    async def list_findings_for_correlation(
        self,
        tenant_id: str,
        correlation_id: str,
    ) -> list[DriftRecord]:
        records: list[DriftRecord] = []
        with _translate_errors("DriftRecord", f"{tenant_id}/{correlation_id}", correlation_id):
            async for entity in self._findings.query_entities(
                query_filter="PartitionKey eq @tenant and CorrelationId eq @correlation",
                parameters={"tenant": tenant_id, "correlation": correlation_id},
            ):
                records.append(drift_record_from_entity(entity))
        return records

    # -------------------------------------------------------------------------
    # Analysis status
    # -------------------------------------------------------------------------

    async def get_analysis_status(
        self,
        tenant_id: str,
        correlation_id: str,
    ) -> AnalysisStatus | None:
        with _translate_errors("AnalysisStatus", correlation_id, correlation_id):
            try:
                entity = await self._statuses.get_entity(
                    partition_key=tenant_id, row_key=correlation_id
                )
            except ResourceNotFoundError:
                return None
        return analysis_status_from_entity(entity)

    async def save_analysis_status(self, status: AnalysisStatus) -> AnalysisStatus:
        entity = analysis_status_to_entity(status)
        with _translate_errors("AnalysisStatus", status.correlation_id, status.correlation_id):
            if status.etag is None:
                metadata = await self._statuses.create_entity(entity=entity)
            else:
                metadata = await self._statuses.update_entity(
                    entity=entity,
                    mode=UpdateMode.REPLACE,
                    etag=status.etag,
                    match_condition=MatchConditions.IfNotModified,
                )
        return analysis_status_from_entity({**entity, "etag": metadata.get("etag")})
