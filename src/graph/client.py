"""Entra Graph Samples — Microsoft Graph client factory.

Provides a single factory for authenticated ``GraphServiceClient`` instances:
  - on-behalf-of the signed-in user, when a user assertion is supplied
  - as the application (client secret) when a secret is configured
  - as the managed identity (DefaultAzureCredential) otherwise
"""

from __future__ import annotations

from typing import Any

import structlog

from src.core.config import settings

logger = structlog.get_logger(__name__)

GRAPH_DEFAULT_SCOPE = "https://graph.microsoft.com/.default"


def create_credential(user_assertion: str | None = None) -> Any:
    """Build the azure-identity credential used for Graph calls."""
    if user_assertion and settings.azure_client_secret:
        from azure.identity.aio import OnBehalfOfCredential

        return OnBehalfOfCredential(
            tenant_id=settings.azure_tenant_id,
            client_id=settings.azure_client_id,
            client_secret=settings.azure_client_secret,
            user_assertion=user_assertion,
        )

    if settings.azure_client_secret:
        from azure.identity.aio import ClientSecretCredential

        return ClientSecretCredential(
            tenant_id=settings.azure_tenant_id,
            client_id=settings.azure_client_id,
            client_secret=settings.azure_client_secret,
        )

    from azure.identity.aio import DefaultAzureCredential

    return DefaultAzureCredential()


def create_graph_client(
    purpose: str = "unknown",
    user_assertion: str | None = None,
    credential: Any = None,
) -> Any:
    """Create an authenticated Microsoft Graph client.

    The caller owns the credential and closes it when the request is done.

    Args:
        purpose: Name of the caller, used in log messages.
        user_assertion: The caller's bearer token for delegated (OBO) access.
        credential: A pre-built async credential; built from settings when omitted.

    Returns:
        GraphServiceClient ready for API calls, or None if the app
        registration is not configured.
    """
    if not settings.azure_tenant_id or not settings.azure_client_id:
        logger.info(
            "graph.client.skipped",
            purpose=purpose,
            reason="AZURE_TENANT_ID / AZURE_CLIENT_ID not configured",
        )
        return None

    try:
        from msgraph import GraphServiceClient

        if credential is None:
            credential = create_credential(user_assertion)
        mode = "delegated" if user_assertion and settings.azure_client_secret else (
            "managed_identity" if settings.use_managed_identity else "client_secret"
        )
        logger.debug("graph.client.created", purpose=purpose, mode=mode)
        return GraphServiceClient(credentials=credential, scopes=[GRAPH_DEFAULT_SCOPE])
    except Exception as e:
        logger.error("graph.client.error", purpose=purpose, error=str(e))
        raise
