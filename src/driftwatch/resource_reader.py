"""Azure Resource Graph reader for observed resource state.

Reads every resource deployed in a pipeline's resource group with a single
KQL query over the ``Resources`` table. The top-level ``sku``, ``kind``,
``identity``, ``zones`` and ``plan`` blocks are folded into the properties
map so they can be compared like any other declared property.

SECURITY:
- All queries use Managed Identity authentication
- Subscription ID and resource group are validated before they are placed in
  KQL, which prevents query injection
- Query results are bounded to prevent OOM
- All queries have timeouts enforced
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
)
from azure.mgmt.resourcegraph import ResourceGraphClient
from azure.mgmt.resourcegraph.models import (
    QueryRequest,
    QueryRequestOptions,
    ResultFormat,
)

from .config import (
    MAX_GRAPH_QUERY_RESULTS,
    MAX_GRAPH_QUERY_TIMEOUT_SECONDS,
    VALID_RESOURCE_GROUP_PATTERN,
    VALID_SUBSCRIPTION_ID_PATTERN,
)
from .domain import ObservedResource
from .errors import (
    CollaboratorTimeoutError,
    MalformedDataError,
    ResourceAuthError,
    ThrottledError,
)

logger = logging.getLogger(__name__)

# Top-level ARM blocks that IaC declares next to "properties"
FOLDED_TOP_LEVEL_FIELDS = ("sku", "kind", "identity", "zones", "plan")

_AUTH_STATUS_CODES = frozenset({401, 403})


def build_scope_query(subscription_id: str, resource_group: str) -> str:
    """Build the KQL query for all resources of one resource group.

    Raises:
        MalformedDataError: If the scope does not look like a subscription GUID
            and a resource group name.
    """
    if not re.match(VALID_SUBSCRIPTION_ID_PATTERN, subscription_id.lower()):
        raise MalformedDataError(f"Invalid subscription ID: {subscription_id!r}")
    if not re.match(VALID_RESOURCE_GROUP_PATTERN, resource_group) or "'" in resource_group:
        raise MalformedDataError(f"Invalid resource group name: {resource_group!r}")

    return f"""
    Resources
    | where subscriptionId == '{subscription_id.lower()}' and resourceGroup =~ '{resource_group}'
    | project id, name, type, location, resourceGroup, subscriptionId, tags,
        properties, sku, kind, identity, zones, plan
    | order by id asc
    """.strip()


def observed_from_row(row: dict[str, Any]) -> ObservedResource:
    """Convert a Resource Graph row into an ObservedResource.

    Raises:
        MalformedDataError: If the row lacks an id, name or type.
    """
    if not isinstance(row, dict):
        raise MalformedDataError(f"Resource Graph row is not an object: {type(row).__name__}")

    resource_id = row.get("id")
    name = row.get("name")
    resource_type = row.get("type")
    if not resource_id or not name or not resource_type:
        raise MalformedDataError(f"Resource Graph row is missing id, name or type: {resource_id}")

    properties = row.get("properties") or {}
    if not isinstance(properties, dict):
        raise MalformedDataError(f"Resource Graph properties are not an object: {resource_id}")
    properties = dict(properties)

    for key in FOLDED_TOP_LEVEL_FIELDS:
        value = row.get(key)
        if value not in (None, "", {}, []) and key not in properties:
            properties[key] = value

    tags = row.get("tags") or {}
    return ObservedResource(
        id=resource_id,
        name=name,
        type=resource_type,
        resource_group=row.get("resourceGroup") or "",
        location=row.get("location") or "",
        subscription_id=row.get("subscriptionId") or "",
        tags=dict(tags) if isinstance(tags, dict) else {},
        properties=properties,
    )


def _retry_after(error: HttpResponseError) -> float | None:
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None) or {}
    value = headers.get("Retry-After") if hasattr(headers, "get") else None
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class ResourceGraphReader:
    """ResourceReader backed by Azure Resource Graph."""

    def __init__(
        self,
        credential: TokenCredential,
        timeout_seconds: float = MAX_GRAPH_QUERY_TIMEOUT_SECONDS,
        client: ResourceGraphClient | None = None,
    ) -> None:
        """Initialize Resource Graph client.

        Args:
            credential: Azure credential (must be Managed Identity)
            timeout_seconds: Timeout of a single query page
            client: Pre-built client, for tests
        """
        self._client = client or ResourceGraphClient(credential=credential)
        self._timeout_seconds = timeout_seconds

    async def get_resources_in_scope(
        self,
        subscription_id: str,
        resource_group: str,
    ) -> list[ObservedResource]:
        query = build_scope_query(subscription_id, resource_group)

        rows: list[dict[str, Any]] = []
        skip_token: str | None = None
        while True:
            page, skip_token = await self._execute_query(subscription_id, query, skip_token)
            rows.extend(page)
            if not skip_token or len(rows) >= MAX_GRAPH_QUERY_RESULTS:
                break

        if len(rows) > MAX_GRAPH_QUERY_RESULTS:
            rows = rows[:MAX_GRAPH_QUERY_RESULTS]
        if skip_token:
            logger.warning(
                "Resource Graph result truncated",
                extra={
                    "subscription_id": subscription_id,
                    "resource_group": resource_group,
                    "max_results": MAX_GRAPH_QUERY_RESULTS,
                },
            )

        resources = [observed_from_row(row) for row in rows]
        logger.info(
            "Resource Graph scope read complete",
            extra={
                "subscription_id": subscription_id,
                "resource_group": resource_group,
                "resources_found": len(resources),
            },
        )
        return resources

    async def _execute_query(
        self,
        subscription_id: str,
        query: str,
        skip_token: str | None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """Execute one page of a Resource Graph query.

        Returns:
            Tuple of (rows, next skip token).

        Raises:
            ResourceAuthError: On 401/403 or credential failures.
            ThrottledError: On 429, 5xx and connection failures.
            CollaboratorTimeoutError: If the query exceeds its timeout.
        """
        request = QueryRequest(
            subscriptions=[subscription_id],
            query=query,
            options=QueryRequestOptions(
                result_format=ResultFormat.OBJECT_ARRAY,
                top=MAX_GRAPH_QUERY_RESULTS,
                skip_token=skip_token,
            ),
        )

        # Resource Graph client is synchronous, wrap in executor
        loop = asyncio.get_running_loop()
        try:
            response = await asyncio.wait_for(
                loop.run_in_executor(None, lambda: self._client.resources(request)),
                timeout=self._timeout_seconds,
            )
        except TimeoutError as e:
            logger.error(
                "Resource Graph query timed out",
                extra={"subscription_id": subscription_id, "timeout_seconds": self._timeout_seconds},
            )
            raise CollaboratorTimeoutError("Resource Graph query", self._timeout_seconds) from e
        except ClientAuthenticationError as e:
            raise ResourceAuthError(f"Resource Graph authentication failed: {e}") from e
        except HttpResponseError as e:
            if e.status_code in _AUTH_STATUS_CODES:
                raise ResourceAuthError(
                    f"Not authorized to read subscription {subscription_id}: {e.message}"
                ) from e
            if e.status_code is None or e.status_code == 429 or e.status_code >= 500:
                raise ThrottledError(
                    f"Resource Graph unavailable ({e.status_code}): {e.message}",
                    retry_after_seconds=_retry_after(e),
                ) from e
            raise MalformedDataError(f"Resource Graph rejected query ({e.status_code}): {e.message}") from e
        except AzureError as e:
            logger.error(
                "Resource Graph query failed",
                extra={"subscription_id": subscription_id, "error": str(e)},
            )
            raise ThrottledError(f"Resource Graph request failed: {e}") from e

        data = response.data
        if data is None:
            return [], None
        # response.data is a list of dictionaries when using OBJECT_ARRAY format
        if not isinstance(data, list):
            raise MalformedDataError("Resource Graph returned a non-list result")
        next_token = response.skip_token if isinstance(response.skip_token, str) else None
        return data, next_token
