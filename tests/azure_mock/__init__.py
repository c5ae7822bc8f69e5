"""Azure and collaborator doubles for testing without Azure connectivity.

- Resource Graph client serving the Resources table with paging
- Managed Identity credentials (sync and asyncio)
- In-memory queue backend with broker-like leases
- Table Storage service and table clients with etag semantics
- Definition source, resource reader, repository and notifier fakes with
  failure injection

Usage:
    from azure_mock import InMemoryQueueBackend, FakeDefinitionSource

    backend = InMemoryQueueBackend()
    backend.send({"correlationId": "c-1", "tenantId": "contoso"})
"""

from .collaborators import (
    DEFAULT_SUBSCRIPTION_ID,
    DEFAULT_TENANT,
    FailingNotifier,
    FailureInjector,
    FakeDefinitionSource,
    FakeResourceReader,
    FlakyRepository,
    RecordingNotifier,
    make_observed,
    make_pipeline,
)
from .credential import (
    MockAsyncManagedIdentityCredential,
    MockManagedIdentityCredential,
    create_mock_credential,
)
from .graph import MockGraphResource, MockResourceGraphClient, create_mock_graph_client
from .queue import DeadLetteredMessage, InMemoryQueueBackend
from .tables import MockEntity, MockTableClient, MockTableServiceClient

__all__ = [
    "DEFAULT_SUBSCRIPTION_ID",
    "DEFAULT_TENANT",
    "DeadLetteredMessage",
    "FailingNotifier",
    "FailureInjector",
    "FakeDefinitionSource",
    "FakeResourceReader",
    "FlakyRepository",
    "InMemoryQueueBackend",
    "MockAsyncManagedIdentityCredential",
    "MockGraphResource",
    "MockEntity",
    "MockManagedIdentityCredential",
    "MockResourceGraphClient",
    "MockTableClient",
    "MockTableServiceClient",
    "RecordingNotifier",
    "create_mock_credential",
    "create_mock_graph_client",
    "make_observed",
    "make_pipeline",
]
