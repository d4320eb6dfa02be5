"""
Tests for TokenRefreshManager.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from connectors.token_manager import TokenRefreshManager
from utils.exceptions import NoTokensFound, RefreshFailed
from utils.schemas import RefreshedToken, TokenBundle

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _bundle(expires_at, refresh="refresh-1"):
    return TokenBundle(access_token="cached-access", refresh_token=refresh, expires_at=expires_at)


def _registry_with(connector):
    registry = MagicMock()
    registry.get.return_value = connector
    return registry


@pytest.fixture
def connector():
    conn = MagicMock()
    conn.refresh_access_token = AsyncMock(
        return_value=RefreshedToken(access_token="fresh-access", expires_at=NOW + timedelta(hours=1))
    )
    return conn


class TestGetValidAccessToken:
    @pytest.mark.asyncio
    async def test_valid_token_is_not_refreshed(self, vault, connector):
        await vault.set_tokens("t1", "gmail", _bundle(NOW + timedelta(minutes=6)))
        manager = TokenRefreshManager(vault, _registry_with(connector), margin_seconds=300, clock=lambda: NOW)

        assert await manager.get_valid_access_token("t1") == "cached-access"
        connector.refresh_access_token.assert_not_called()

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_once_and_persisted(self, vault, connector):
        await vault.set_tokens("t1", "gmail", _bundle(NOW - timedelta(minutes=1)))
        manager = TokenRefreshManager(vault, _registry_with(connector), clock=lambda: NOW)

        assert await manager.get_valid_access_token("t1") == "fresh-access"

        connector.refresh_access_token.assert_awaited_once_with("refresh-1")
        stored = await vault.get_tokens("t1")
        assert stored.access_token == "fresh-access"
        assert stored.expires_at == NOW + timedelta(hours=1)
        assert stored.refresh_token == "refresh-1"

    @pytest.mark.asyncio
    async def test_token_inside_margin_is_refreshed(self, vault, connector):
        await vault.set_tokens("t1", "gmail", _bundle(NOW + timedelta(minutes=4)))
        manager = TokenRefreshManager(vault, _registry_with(connector), margin_seconds=300, clock=lambda: NOW)

        assert await manager.get_valid_access_token("t1") == "fresh-access"
        connector.refresh_access_token.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token(self, vault, connector):
        await vault.set_tokens("t1", "gmail", _bundle(NOW - timedelta(minutes=1), refresh=None))
        manager = TokenRefreshManager(vault, _registry_with(connector), clock=lambda: NOW)

        with pytest.raises(RefreshFailed):
            await manager.get_valid_access_token("t1")
        connector.refresh_access_token.assert_not_called()

    @pytest.mark.asyncio
    async def test_provider_rejection_surfaces(self, vault, connector):
        connector.refresh_access_token.side_effect = RefreshFailed()
        await vault.set_tokens("t1", "outlook", _bundle(NOW - timedelta(minutes=1)))
        manager = TokenRefreshManager(vault, _registry_with(connector), clock=lambda: NOW)

        with pytest.raises(RefreshFailed):
            await manager.get_valid_access_token("t1")
        assert (await vault.get_tokens("t1")).access_token == "cached-access"

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, vault, connector):
        manager = TokenRefreshManager(vault, _registry_with(connector))
        with pytest.raises(NoTokensFound):
            await manager.get_valid_access_token("nobody")

    @pytest.mark.asyncio
    async def test_wrong_provider(self, vault, connector):
        await vault.set_tokens("t1", "gmail", _bundle(NOW + timedelta(hours=1)))
        manager = TokenRefreshManager(vault, _registry_with(connector), clock=lambda: NOW)
        with pytest.raises(NoTokensFound):
            await manager.get_valid_access_token("t1", provider="outlook")


class TestForceRefresh:
    @pytest.mark.asyncio
    async def test_refreshes_valid_token(self, vault, connector):
        await vault.set_tokens("t1", "gmail", _bundle(NOW + timedelta(hours=1)))
        manager = TokenRefreshManager(vault, _registry_with(connector), clock=lambda: NOW)

        assert await manager.force_refresh("t1") == "fresh-access"
        connector.refresh_access_token.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_end_to_end_with_outlook_rotation(self, vault, registry, idp):
        await vault.set_tokens("t1", "outlook", _bundle(datetime.now(timezone.utc) - timedelta(minutes=1)))
        manager = TokenRefreshManager(vault, registry)

        assert await manager.get_valid_access_token("t1") == "access-refreshed-1"
        assert idp.refresh_calls == 1
        assert (await vault.get_tokens("t1")).refresh_token == "refresh-rotated-1"

        assert await manager.get_valid_access_token("t1") == "access-refreshed-1"
        assert idp.refresh_calls == 1
