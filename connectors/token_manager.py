"""
Token manager — hand out a currently valid access token per tenant.

This is the single interface that provisioned workflows (through the
token endpoint) and internal callers use to get an active token.

Two concurrent callers for the same tenant may both see an expired
token and both refresh.  That race is accepted: each refresh yields a
valid access token, the last write wins, and Microsoft keeps earlier
refresh tokens usable after rotation.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

from connectors.registry import ConnectorRegistry
from connectors.vault import CredentialVault
from utils.exceptions import NoTokensFound, RefreshFailed
from utils.schemas import TokenBundle

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenRefreshManager:
    def __init__(
        self,
        vault: CredentialVault,
        registry: ConnectorRegistry,
        margin_seconds: int = 300,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._vault = vault
        self._registry = registry
        self.margin_seconds = margin_seconds
        self._clock = clock

    async def _load(self, tenant_id: str, provider: Optional[str]) -> Tuple[str, TokenBundle]:
        stored_provider, bundle = await self._vault.get_tokens_with_provider(tenant_id)
        if provider is not None and provider != stored_provider:
            logger.info(
                "Tenant %s asked for %s token but is connected to %s",
                tenant_id, provider, stored_provider,
            )
            raise NoTokensFound(tenant_id)
        return stored_provider, bundle

    async def get_valid_access_token(self, tenant_id: str, provider: Optional[str] = None) -> str:
        """
        Get a valid access token for the tenant.

        1. Load the bundle (``NoTokensFound`` if the tenant never connected,
           or is connected to a provider other than ``provider``).
        2. If it expires within the safety margin, refresh and persist it.
        3. Return the access token string.
        """
        provider, bundle = await self._load(tenant_id, provider)

        if not bundle.is_expired(self.margin_seconds, now=self._clock()):
            logger.debug("Cached %s token still valid for tenant %s", provider, tenant_id)
            return bundle.access_token

        logger.info(
            "%s token for tenant %s expired or expiring (expires_at=%s), refreshing",
            provider, tenant_id, bundle.expires_at.isoformat(),
        )
        refreshed = await self._refresh(tenant_id, provider, bundle)
        return refreshed.access_token

    async def force_refresh(self, tenant_id: str, provider: Optional[str] = None) -> str:
        """Refresh regardless of the cached expiry."""
        provider, bundle = await self._load(tenant_id, provider)
        refreshed = await self._refresh(tenant_id, provider, bundle)
        return refreshed.access_token

    async def _refresh(self, tenant_id: str, provider: str, bundle: TokenBundle) -> TokenBundle:
        if not bundle.refresh_token:
            logger.warning("No refresh token stored for tenant %s (%s)", tenant_id, provider)
            raise RefreshFailed("Token expired and no refresh token available")

        connector = self._registry.get(provider)
        refreshed = await connector.refresh_access_token(bundle.refresh_token)
        updated = await self._vault.update_access_token(tenant_id, refreshed)
        logger.info("Refreshed %s token for tenant %s", provider, tenant_id)
        return updated
