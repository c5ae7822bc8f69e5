"""Domain entities for drift analysis.

Plain dataclasses with explicit constructors and state transitions. The
repository layer converts these to and from storage entities with one
function per entity type; nothing here knows about persistence.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .errors import InvalidScanTransitionError

# Stable namespace for deterministic entity IDs
ENTITY_ID_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_DNS, "driftwatch.entities")


def utcnow() -> datetime:
    return datetime.now(UTC)


class Severity(str, Enum):
    """Drift severity. Totally ordered, CRITICAL highest.

    NONE is only used as the overall risk of an analysis without findings.
    """

    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"
    INFO = "Info"
    NONE = "None"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value: str) -> Severity:
        """Parse a severity name case-insensitively."""
        for member in cls:
            if member.value.lower() == value.lower():
                return member
        raise ValueError(f"Unknown severity: {value}")


_SEVERITY_RANK: dict[Severity, int] = {
    Severity.CRITICAL: 5,
    Severity.HIGH: 4,
    Severity.MEDIUM: 3,
    Severity.LOW: 2,
    Severity.INFO: 1,
    Severity.NONE: 0,
}


def max_severity(severities: Iterable[Severity]) -> Severity:
    """Highest severity of the iterable, or NONE when empty."""
    return max(severities, key=lambda s: s.rank, default=Severity.NONE)


class Category(str, Enum):
    """Drift category."""

    SECURITY = "security"
    PERFORMANCE = "performance"
    COST = "cost"
    COMPLIANCE = "compliance"
    CONFIGURATION = "configuration"


class MismatchKind(str, Enum):
    """Nature of a detected mismatch."""

    MISSING_RESOURCE = "missing_resource"
    MISSING_PROPERTY = "missing_property"
    VALUE_MISMATCH = "value_mismatch"
    UNMANAGED_RESOURCE = "unmanaged_resource"


@dataclass(frozen=True)
class ObservedResource:
    """Snapshot of a deployed Azure resource.

    Attributes:
        id: Full ARM resource ID
        name: Resource name
        type: Resource type (e.g., Microsoft.Storage/storageAccounts)
        resource_group: Resource group name
        location: Azure region
        subscription_id: Subscription ID
        tags: Resource tags
        properties: Resource properties, including the top-level sku/kind/identity blocks
    """

    id: str
    name: str
    type: str
    resource_group: str = ""
    location: str = ""
    subscription_id: str = ""
    tags: dict[str, str] = field(default_factory=dict)
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DriftFinding:
    """One detected mismatch between expected and observed state."""

    resource_id: str
    resource_type: str
    resource_name: str
    property: str
    expected_value: str
    actual_value: str
    severity: Severity
    category: Category
    description: str
    recommendation: str
    mismatch_kind: MismatchKind = MismatchKind.VALUE_MISMATCH

    def to_dict(self) -> dict[str, Any]:
        return {
            "resourceId": self.resource_id,
            "resourceType": self.resource_type,
            "resourceName": self.resource_name,
            "property": self.property,
            "expectedValue": self.expected_value,
            "actualValue": self.actual_value,
            "severity": self.severity.value,
            "category": self.category.value,
            "description": self.description,
            "recommendation": self.recommendation,
            "mismatchKind": self.mismatch_kind.value,
        }


@dataclass
class DriftAnalysisResult:
    """Aggregate of one pipeline analysis. Not persisted as a single record."""

    findings: list[DriftFinding] = field(default_factory=list)
    resources_scanned: int = 0

    @property
    def drift_count(self) -> int:
        return len(self.findings)

    @property
    def overall_risk(self) -> Severity:
        return max_severity(f.severity for f in self.findings)

    @property
    def action_required(self) -> bool:
        return self.overall_risk in (Severity.CRITICAL, Severity.HIGH)

    @property
    def severity_counts(self) -> dict[Severity, int]:
        counts = {s: 0 for s in Severity if s is not Severity.NONE}
        for finding in self.findings:
            counts[finding.severity] += 1
        return counts

    @property
    def summary(self) -> str:
        if not self.findings:
            return f"No drift detected across {self.resources_scanned} resources"
        return (
            f"{self.drift_count} drifts detected across {self.resources_scanned} resources "
            f"(overall risk: {self.overall_risk.value})"
        )

    def to_summary_dict(self) -> dict[str, Any]:
        counts = self.severity_counts
        return {
            "totalDrifts": self.drift_count,
            "critical": counts[Severity.CRITICAL],
            "high": counts[Severity.HIGH],
            "medium": counts[Severity.MEDIUM],
            "low": counts[Severity.LOW],
            "info": counts[Severity.INFO],
            "resourcesScanned": self.resources_scanned,
            "overallRisk": self.overall_risk.value,
            "actionRequired": self.action_required,
            "summary": self.summary,
        }


# =============================================================================
# Pipelines
# =============================================================================


class PipelineStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    ERROR = "Error"


@dataclass
class Pipeline:
    """A monitored CI pipeline and the Azure scope its IaC deploys to."""

    id: str
    tenant_id: str
    name: str
    subscription_id: str
    resource_group: str
    status: PipelineStatus = PipelineStatus.ACTIVE
    organization: str = ""
    project: str = ""
    repository_id: str = ""
    branch: str = "main"
    terraform_path: str = ""
    last_scan_at: datetime | None = None
    last_scan_correlation_id: str | None = None
    drift_count: int = 0
    etag: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == PipelineStatus.ACTIVE

    def record_scan(self, scan_log: ScanLog) -> None:
        """Update scan statistics from a terminal scan log."""
        self.last_scan_at = scan_log.completed_at or utcnow()
        self.last_scan_correlation_id = scan_log.correlation_id
        if scan_log.status == ScanStatus.SUCCESS:
            self.drift_count = scan_log.drift_count


# =============================================================================
# Scan logs
# =============================================================================


class ScanStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not ScanStatus.RUNNING


def scan_log_id(correlation_id: str, pipeline_id: str, attempt: int) -> str:
    """Deterministic scan log ID. Concurrent duplicates collide on insert."""
    return str(uuid.uuid5(ENTITY_ID_NAMESPACE, f"scan/{correlation_id}/{pipeline_id}/{attempt}"))


@dataclass
class ScanLog:
    """One analysis attempt for one pipeline.

    Created RUNNING, moves to exactly one terminal state, and never moves
    again. Transition methods raise InvalidScanTransitionError otherwise.
    """

    tenant_id: str
    id: str
    pipeline_id: str
    correlation_id: str
    triggered_by: str
    pipeline_name: str = ""
    attempt: int = 1
    status: ScanStatus = ScanStatus.RUNNING
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    drift_count: int = 0
    resources_scanned: int = 0
    duration_seconds: float = 0.0
    overall_risk: Severity = Severity.NONE
    error_message: str | None = None
    etag: str | None = None

    @classmethod
    def start(
        cls,
        *,
        tenant_id: str,
        pipeline: Pipeline,
        correlation_id: str,
        triggered_by: str,
        attempt: int = 1,
    ) -> ScanLog:
        return cls(
            tenant_id=tenant_id,
            id=scan_log_id(correlation_id, pipeline.id, attempt),
            pipeline_id=pipeline.id,
            pipeline_name=pipeline.name,
            correlation_id=correlation_id,
            triggered_by=triggered_by,
            attempt=attempt,
        )

    def restart(self) -> None:
        """Take over a RUNNING scan abandoned by another worker."""
        if self.status != ScanStatus.RUNNING:
            raise InvalidScanTransitionError(self.id, self.status.value, ScanStatus.RUNNING.value)
        self.started_at = utcnow()

    def complete(self, result: DriftAnalysisResult) -> None:
        self._finish(ScanStatus.SUCCESS)
        self.drift_count = result.drift_count
        self.resources_scanned = result.resources_scanned
        self.overall_risk = result.overall_risk

    def fail(self, error_message: str) -> None:
        self._finish(ScanStatus.FAILED)
        self.error_message = error_message

    def cancel(self, reason: str) -> None:
        self._finish(ScanStatus.CANCELLED)
        self.error_message = reason

    def _finish(self, status: ScanStatus) -> None:
        if self.status.is_terminal:
            raise InvalidScanTransitionError(self.id, self.status.value, status.value)
        self.status = status
        self.completed_at = utcnow()
        self.duration_seconds = (self.completed_at - self.started_at).total_seconds()


# =============================================================================
# Persisted findings
# =============================================================================


class FindingStatus(str, Enum):
    """Review lifecycle of a persisted finding. Only NEW is set here."""

    NEW = "new"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    IGNORED = "ignored"


def drift_record_id(correlation_id: str, pipeline_id: str, resource_id: str, prop: str) -> str:
    """Deterministic finding ID so re-persisting a batch overwrites, never duplicates."""
    key = f"drift/{correlation_id}/{pipeline_id}/{resource_id.lower()}/{prop}"
    return str(uuid.uuid5(ENTITY_ID_NAMESPACE, key))


@dataclass
class DriftRecord:
    """A DriftFinding as persisted for one scan."""

    id: str
    tenant_id: str
    pipeline_id: str
    correlation_id: str
    scan_log_id: str
    finding: DriftFinding
    status: FindingStatus = FindingStatus.NEW
    detected_at: datetime = field(default_factory=utcnow)
    etag: str | None = None

    @classmethod
    def from_finding(cls, scan_log: ScanLog, finding: DriftFinding) -> DriftRecord:
        return cls(
            id=drift_record_id(
                scan_log.correlation_id,
                scan_log.pipeline_id,
                finding.resource_id,
                finding.property,
            ),
            tenant_id=scan_log.tenant_id,
            pipeline_id=scan_log.pipeline_id,
            correlation_id=scan_log.correlation_id,
            scan_log_id=scan_log.id,
            finding=finding,
        )


# =============================================================================
# Request-level status
# =============================================================================


class AnalysisState(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class AnalysisStatus:
    """Status of one analysis request across all of its pipelines."""

    correlation_id: str
    tenant_id: str
    status: AnalysisState = AnalysisState.PROCESSING
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    drift_count: int = 0
    overall_risk: Severity = Severity.NONE
    error_message: str | None = None
    etag: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status != AnalysisState.PROCESSING

    def mark_completed(self, drift_count: int, overall_risk: Severity) -> None:
        self.status = AnalysisState.COMPLETED
        self.completed_at = utcnow()
        self.drift_count = drift_count
        self.overall_risk = overall_risk

    def mark_failed(self, error_message: str) -> None:
        self.status = AnalysisState.FAILED
        self.completed_at = utcnow()
        self.error_message = error_message
