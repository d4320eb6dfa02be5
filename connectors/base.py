"""
BaseConnector — abstract interface for the mailbox OAuth2 providers.

Every provider (Gmail, Outlook) subclasses this and implements the raw
token calls; the base class normalises their responses into the
canonical ``TokenBundle`` so nothing downstream branches on provider.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from config.settings import Settings
from utils.exceptions import CodeExchangeFailed, RefreshFailed
from utils.schemas import RefreshedToken, TokenBundle, TokenExchangeResult, normalize_exchange

logger = logging.getLogger(__name__)


class BaseConnector(ABC):
    """Abstract base for all OAuth2 mailbox connectors."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self._transport = transport

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Unique slug: 'gmail', 'outlook'."""
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        ...

    @property
    @abstractmethod
    def scopes(self) -> List[str]:
        """OAuth scopes required by this connector."""
        ...

    @property
    @abstractmethod
    def token_url(self) -> str:
        ...

    @property
    def redirect_uri(self) -> str:
        return self.settings.redirect_uri_for(self.provider_name)

    # ── OAuth flow ──────────────────────────────────────────────────────

    @abstractmethod
    def get_auth_url(self, state: str) -> str:
        """
        Build the provider's OAuth2 authorization URL.

        Must request offline access and force the consent screen so a
        refresh token is always issued.
        """
        ...

    @abstractmethod
    def _parse_exchange(self, body: Dict[str, Any]) -> TokenExchangeResult:
        ...

    @abstractmethod
    def _code_grant(self, code: str) -> Dict[str, str]:
        """Form body for ``grant_type=authorization_code``."""
        ...

    @abstractmethod
    def _refresh_grant(self, refresh_token: str) -> Dict[str, str]:
        """Form body for ``grant_type=refresh_token``."""
        ...

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=self.settings.http_timeout_seconds,
        )

    async def _post_token(self, data: Dict[str, str]) -> Dict[str, Any]:
        async with self._client() as client:
            resp = await client.post(
                self.token_url,
                data=data,
                headers={"Accept": "application/json"},
            )
            resp.raise_for_status()
            return resp.json()

    async def exchange_code(self, code: str) -> TokenBundle:
        """Exchange the authorization code for a normalised ``TokenBundle``."""
        try:
            body = await self._post_token(self._code_grant(code))
            result = self._parse_exchange(body)
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "%s code exchange rejected: HTTP %s %s",
                self.provider_name,
                exc.response.status_code,
                _oauth_error(exc.response),
            )
            raise CodeExchangeFailed() from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("%s code exchange failed: %s", self.provider_name, type(exc).__name__)
            raise CodeExchangeFailed() from exc

        bundle = normalize_exchange(result)
        logger.info(
            "%s code exchanged (refresh_token=%s, expires_at=%s)",
            self.provider_name,
            "yes" if bundle.refresh_token else "no",
            bundle.expires_at.isoformat(),
        )
        return bundle

    async def refresh_access_token(self, refresh_token: str) -> RefreshedToken:
        """Use the refresh token to obtain a new access token."""
        try:
            data = await self._post_token(self._refresh_grant(refresh_token))
            access_token = data["access_token"]
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "%s refresh rejected: HTTP %s %s",
                self.provider_name,
                exc.response.status_code,
                _oauth_error(exc.response),
            )
            raise RefreshFailed() from exc
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            logger.warning("%s refresh failed: %s", self.provider_name, type(exc).__name__)
            raise RefreshFailed() from exc

        return RefreshedToken(
            access_token=access_token,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=int(data.get("expires_in", 3600))),
            token_type=data.get("token_type") or "Bearer",
            refresh_token=data.get("refresh_token"),
        )

    def is_configured(self) -> bool:
        return True


def _oauth_error(response: httpx.Response) -> str:
    """The RFC 6749 ``error`` code from a token endpoint response, if any."""
    try:
        return str(response.json().get("error", ""))
    except ValueError:
        return ""
