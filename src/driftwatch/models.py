"""Pydantic models for data crossing the process boundary.

These models provide:
1. Type-safe parsing of queue messages and IaC definition files
2. Validation at the boundary (fail fast, fail loudly)
3. Forward compatibility: unknown fields are ignored, never rejected
"""

from __future__ import annotations

import json
import re
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from .config import VALID_SUBSCRIPTION_ID_PATTERN
from .errors import MalformedMessageError

# Hard cap on a single queue message body (Service Bus standard tier limit)
MAX_MESSAGE_BODY_BYTES = 256 * 1024


class TriggerType(str, Enum):
    """What started an analysis."""

    SCHEDULED = "Scheduled"
    AD_HOC = "AdHoc"
    RETRY = "Retry"


class Priority(str, Enum):
    """Queue priority hint carried by the request."""

    NORMAL = "Normal"
    HIGH = "High"


def _coerce_enum(enum_cls: type[Enum], value: Any) -> Any:
    """Match enum values case-insensitively ("adhoc" -> AdHoc)."""
    if isinstance(value, str):
        for member in enum_cls:
            if member.value.lower() == value.lower():
                return member
    return value


class AnalysisRequest(BaseModel):
    """A drift-analysis request as carried on the queue.

    Wire format is the camelCase ``DriftAnalysisMessage`` JSON object.
    Snake_case field names are accepted too.
    """

    model_config = {"extra": "ignore", "populate_by_name": True, "frozen": True}

    correlation_id: Annotated[str, Field(min_length=1, max_length=128, alias="correlationId")]
    tenant_id: Annotated[str, Field(min_length=1, max_length=128, alias="tenantId")]
    pipeline_id: str | None = Field(None, alias="pipelineId")
    organization_id: str | None = Field(None, alias="organizationId")
    trigger_type: TriggerType = Field(TriggerType.SCHEDULED, alias="triggerType")
    initiated_by: str | None = Field(None, alias="initiatedBy")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC), alias="createdAt")
    retry_count: Annotated[int, Field(ge=0, alias="retryCount")] = 0
    priority: Priority = Priority.NORMAL

    @field_validator("correlation_id", "tenant_id", mode="before")
    @classmethod
    def strip_required_ids(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("pipeline_id", "organization_id", "initiated_by", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("trigger_type", mode="before")
    @classmethod
    def parse_trigger_type(cls, v: Any) -> Any:
        return _coerce_enum(TriggerType, v)

    @field_validator("priority", mode="before")
    @classmethod
    def parse_priority(cls, v: Any) -> Any:
        return _coerce_enum(Priority, v)

    @field_validator("created_at")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    @property
    def analyze_all(self) -> bool:
        """True when the request targets every active pipeline of the tenant."""
        return self.pipeline_id is None

    @property
    def triggered_by(self) -> str:
        """Who or what triggered the analysis, for the scan log."""
        return self.initiated_by or self.trigger_type.value

    def to_message_body(self) -> str:
        """Serialize to the camelCase wire format."""
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_message_body(cls, body: str | bytes) -> AnalysisRequest:
        """Parse and validate a raw queue message body.

        Raises:
            MalformedMessageError: If the body is not a valid request. The
                error message lists every validation failure.
        """
        if isinstance(body, bytes):
            if len(body) > MAX_MESSAGE_BODY_BYTES:
                raise MalformedMessageError(
                    f"Message body exceeds {MAX_MESSAGE_BODY_BYTES} bytes"
                )
            try:
                body = body.decode("utf-8")
            except UnicodeDecodeError as e:
                raise MalformedMessageError(f"Message body is not UTF-8: {e}") from e
        elif len(body) > MAX_MESSAGE_BODY_BYTES:
            raise MalformedMessageError(f"Message body exceeds {MAX_MESSAGE_BODY_BYTES} bytes")

        try:
            raw = json.loads(body)
        except json.JSONDecodeError as e:
            raise MalformedMessageError(f"Message body is not JSON: {e}") from e

        if not isinstance(raw, dict):
            raise MalformedMessageError("Message body must be a JSON object")

        correlation_id = raw.get("correlationId") or raw.get("correlation_id")
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            errors = []
            for error in e.errors():
                loc = ".".join(str(x) for x in error["loc"])
                errors.append(f"{loc}: {error['msg']}")
            raise MalformedMessageError(
                "Invalid analysis request: " + "; ".join(errors),
                correlation_id=correlation_id if isinstance(correlation_id, str) else None,
            ) from e


class ExpectedResource(BaseModel):
    """A resource as declared by the IaC definitions of a pipeline."""

    model_config = {"extra": "ignore", "frozen": True}

    type: Annotated[str, Field(min_length=1, max_length=256)]
    name: Annotated[str, Field(min_length=1, max_length=260)]
    properties: dict[str, Any] = Field(default_factory=dict)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if "/" not in v:
            raise ValueError("type must be a provider resource type like Microsoft.Storage/storageAccounts")
        return v


class ResourceDefinitions(BaseModel):
    """Document holding the extracted expected resources of one pipeline."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    pipeline_id: str | None = Field(None, alias="pipelineId")
    resources: list[ExpectedResource] = Field(default_factory=list)


class PipelineEntry(BaseModel):
    """One monitored pipeline in a pipeline registry file."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    id: Annotated[str, Field(min_length=1, max_length=128)]
    tenant_id: Annotated[str, Field(min_length=1, max_length=128, alias="tenantId")]
    name: str = ""
    subscription_id: Annotated[str, Field(alias="subscriptionId")]
    resource_group: Annotated[str, Field(min_length=1, max_length=90, alias="resourceGroup")]
    active: bool = True
    organization: str = ""
    project: str = ""
    repository_id: str = Field("", alias="repositoryId")
    branch: str = "main"
    terraform_path: str = Field("", alias="terraformPath")

    @field_validator("subscription_id")
    @classmethod
    def validate_subscription_id(cls, v: str) -> str:
        if not re.match(VALID_SUBSCRIPTION_ID_PATTERN, v.lower()):
            raise ValueError(f"subscriptionId must be a GUID: {v}")
        return v.lower()


class PipelineRegistry(BaseModel):
    """Registry document listing the monitored pipelines (``pipelines.yaml``)."""

    model_config = {"extra": "ignore"}

    pipelines: list[PipelineEntry] = Field(default_factory=list)
