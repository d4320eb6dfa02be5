"""
FastAPI dependencies (shared across routes).

Components are built once by ``main.create_app()`` and parked on
``app.state``; these helpers hand them to the route functions.
"""

from __future__ import annotations

import hmac
from typing import AsyncGenerator, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import Settings
from connectors.registry import ConnectorRegistry
from connectors.token_manager import TokenRefreshManager
from database.session import get_db_session
from onboarding.orchestrator import OnboardingOrchestrator


async def db_session(session: AsyncSession = Depends(get_db_session)) -> AsyncGenerator[AsyncSession, None]:
    """Re-export so routes import from a single place."""
    yield session


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_registry(request: Request) -> ConnectorRegistry:
    return request.app.state.registry


def get_orchestrator(request: Request) -> OnboardingOrchestrator:
    return request.app.state.orchestrator


def get_token_manager(request: Request) -> TokenRefreshManager:
    return request.app.state.token_manager


async def require_internal_key(
    settings: Settings = Depends(get_settings),
    x_internal_key: Optional[str] = Header(None, alias="X-Internal-Key"),
) -> None:
    """
    Guard for the token endpoints called by provisioned workflows.

    Open when ``INTERNAL_API_KEY`` is unset.
    """
    expected = settings.internal_api_key
    if not expected:
        return
    if not x_internal_key or not hmac.compare_digest(x_internal_key, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid internal API key",
        )
