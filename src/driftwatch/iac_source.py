"""IaC definition loading with validation.

Each pipeline's expected resources live in one file under the definitions
directory, named after the pipeline: ``<pipeline_id>.yaml``, ``.yml`` or
``.json``. The file holds the already-extracted resources::

    pipelineId: pipe-storage
    resources:
      - type: Microsoft.Storage/storageAccounts
        name: stdriftprod
        properties:
          sku: {name: Standard_GRS}

A Kubernetes-style wrapper (apiVersion/kind/spec) is accepted as well, in
which case the ``spec`` section holds the document.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Pipeline IDs are validated against a strict pattern before
they are used to build a path, which rules out path traversal.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_DEFINITION_FILE_SIZE_BYTES, VALID_PIPELINE_ID_PATTERN
from .domain import Pipeline, PipelineStatus
from .errors import DefinitionNotFoundError, MalformedDataError, SourceUnavailableError
from .models import ExpectedResource, PipelineRegistry, ResourceDefinitions

logger = logging.getLogger(__name__)

DEFINITION_SUFFIXES = (".yaml", ".yml", ".json")

# Optional registry of monitored pipelines, used to seed the in-memory store
PIPELINE_REGISTRY_FILENAME = "pipelines.yaml"


def parse_definitions(content: str, source: str, json_format: bool = False) -> ResourceDefinitions:
    """Parse a definitions document.

    Args:
        content: File content.
        source: Name used in error messages.
        json_format: Parse as JSON instead of YAML.

    Raises:
        MalformedDataError: If the content is not a valid definitions document.
    """
    try:
        raw_data = json.loads(content) if json_format else yaml.safe_load(content)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise MalformedDataError(f"Invalid definitions in {source}: {e}") from e

    if not isinstance(raw_data, dict):
        raise MalformedDataError(f"Definitions must be a mapping: {source}")

    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        data: Any = raw_data.get("spec", {})
        if not isinstance(data, dict):
            raise MalformedDataError(f"Spec section must be a mapping: {source}")
    else:
        data = raw_data

    try:
        return ResourceDefinitions.model_validate(data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise MalformedDataError(f"Validation failed for {source}:\n{error_list}") from e


def load_definitions_file(path: Path) -> ResourceDefinitions:
    """Load and validate a definitions file from disk.

    Raises:
        MalformedDataError: If the file is too large or fails validation.
        OSError: If the file cannot be read.
    """
    # SECURITY: Check file size before reading to prevent DoS
    file_size = path.stat().st_size
    if file_size > MAX_DEFINITION_FILE_SIZE_BYTES:
        raise MalformedDataError(
            f"Definitions file exceeds maximum size of {MAX_DEFINITION_FILE_SIZE_BYTES} bytes: {path}"
        )

    content = path.read_text(encoding="utf-8")
    return parse_definitions(content, str(path), json_format=path.suffix == ".json")


class FileDefinitionSource:
    """DefinitionSource reading one definitions file per pipeline."""

    def __init__(self, definitions_dir: Path) -> None:
        self._definitions_dir = definitions_dir

    def _find_file(self, pipeline_id: str) -> Path | None:
        for suffix in DEFINITION_SUFFIXES:
            candidate = self._definitions_dir / f"{pipeline_id}{suffix}"
            if candidate.is_file():
                return candidate
        return None

    def _load(self, pipeline_id: str) -> list[ExpectedResource]:
        if not re.match(VALID_PIPELINE_ID_PATTERN, pipeline_id):
            raise MalformedDataError(f"Invalid pipeline ID: {pipeline_id!r}")

        if not self._definitions_dir.is_dir():
            raise SourceUnavailableError(
                f"Definitions directory is not available: {self._definitions_dir}"
            )

        path = self._find_file(pipeline_id)
        if path is None:
            raise DefinitionNotFoundError(pipeline_id)

        try:
            definitions = load_definitions_file(path)
        except OSError as e:
            raise SourceUnavailableError(f"Failed to read definitions file {path}: {e}") from e

        if definitions.pipeline_id and definitions.pipeline_id != pipeline_id:
            raise MalformedDataError(
                f"Definitions file {path} belongs to pipeline {definitions.pipeline_id}, "
                f"not {pipeline_id}"
            )

        logger.info(
            "Loaded resource definitions",
            extra={"pipeline_id": pipeline_id, "path": str(path), "count": len(definitions.resources)},
        )
        return list(definitions.resources)

    async def get_expected_resources(self, pipeline_id: str) -> list[ExpectedResource]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._load, pipeline_id)


def load_pipeline_registry(path: Path) -> list[Pipeline]:
    """Load the monitored pipelines from a registry file.

    Expected format:
    ```yaml
    pipelines:
      - id: pipe-storage
        tenantId: contoso
        name: Storage
        subscriptionId: 00000000-0000-0000-0000-000000000000
        resourceGroup: rg-storage-prod
    ```

    Raises:
        MalformedDataError: If the file is too large or fails validation.
        OSError: If the file cannot be read.
    """
    if path.stat().st_size > MAX_DEFINITION_FILE_SIZE_BYTES:
        raise MalformedDataError(
            f"Pipeline registry exceeds maximum size of {MAX_DEFINITION_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        raw_data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise MalformedDataError(f"Invalid pipeline registry {path}: {e}") from e

    try:
        registry = PipelineRegistry.model_validate(raw_data or {})
    except ValidationError as e:
        raise MalformedDataError(f"Validation failed for {path}: {e.error_count()} errors") from e

    for entry in registry.pipelines:
        if not re.match(VALID_PIPELINE_ID_PATTERN, entry.id):
            raise MalformedDataError(f"Invalid pipeline ID in {path}: {entry.id!r}")

    return [
        Pipeline(
            id=entry.id,
            tenant_id=entry.tenant_id,
            name=entry.name or entry.id,
            subscription_id=entry.subscription_id,
            resource_group=entry.resource_group,
            status=PipelineStatus.ACTIVE if entry.active else PipelineStatus.INACTIVE,
            organization=entry.organization,
            project=entry.project,
            repository_id=entry.repository_id,
            branch=entry.branch,
            terraform_path=entry.terraform_path,
        )
        for entry in registry.pipelines
    ]
