"""Secretless credential handling.

The worker authenticates to Azure exclusively with a Managed Identity:
- Resource Graph reads use the synchronous credential (the management SDK
  client is synchronous and runs in an executor)
- Queue and Table clients use the asyncio credential

Credential environment variables (client secrets, certificates, passwords)
are refused at startup. Connection strings are accepted for local emulators
only, which Config validates.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from azure.identity import ManagedIdentityCredential
from azure.identity.aio import ManagedIdentityCredential as AsyncManagedIdentityCredential

logger = logging.getLogger(__name__)

# Would make azure-identity fall back to secret-based authentication
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)


class SecretlessViolationError(Exception):
    """Raised when credential secrets are present in the environment.

    Fatal: the worker must not start. Only variable names are reported,
    never their values.
    """

    def __init__(self, env_vars: list[str]) -> None:
        self.env_vars = env_vars
        super().__init__(
            "SECURITY VIOLATION: the drift analysis worker authenticates with "
            f"Managed Identity only, but {', '.join(env_vars)} "
            f"{'is' if len(env_vars) == 1 else 'are'} set.\n"
            "Remove the credential variables, assign a user-assigned managed identity "
            "to the worker and grant it Reader on the analysed scopes plus data roles "
            "on the queue and the storage tables."
        )


def find_credential_env_vars() -> list[str]:
    return [name for name in FORBIDDEN_CREDENTIAL_ENV_VARS if os.environ.get(name)]


def enforce_secretless_architecture() -> None:
    """Refuse to run with credential secrets in the environment.

    Raises:
        SecretlessViolationError: If any credential environment variable is set.
    """
    detected = find_credential_env_vars()
    if detected:
        logger.critical(
            "Secretless architecture violation",
            extra={
                "security_event": "credential_detected",
                "env_vars": detected,
                "action": "startup_blocked",
            },
        )
        raise SecretlessViolationError(detected)

    logger.info(
        "Secretless architecture verified",
        extra={"security_event": "secretless_verified", "credential_type": "ManagedIdentity"},
    )


def _identity_kwargs(client_id: str | None) -> dict[str, Any]:
    enforce_secretless_architecture()

    if not client_id:
        logger.info("Using system-assigned managed identity")
        return {}

    redacted = client_id[:8] + "..." if len(client_id) > 8 else client_id
    logger.info("Using user-assigned managed identity", extra={"client_id": redacted})
    return {"client_id": client_id}


def get_managed_identity_credential(client_id: str | None = None) -> ManagedIdentityCredential:
    """Synchronous Managed Identity credential, for Resource Graph.

    Args:
        client_id: Client ID of a user-assigned identity. None selects the
                   system-assigned identity.

    Raises:
        SecretlessViolationError: If credential environment variables are set.
    """
    return ManagedIdentityCredential(**_identity_kwargs(client_id))


def get_async_managed_identity_credential(
    client_id: str | None = None,
) -> AsyncManagedIdentityCredential:
    """Asyncio Managed Identity credential, for queue and table clients.

    Close it with ``await credential.close()`` on shutdown.
    """
    return AsyncManagedIdentityCredential(**_identity_kwargs(client_id))
