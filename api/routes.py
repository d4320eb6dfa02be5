"""
HTTP routes.

``oauth_router`` (prefix ``/auth``) serves the browser-facing connect and
callback redirects.  ``router`` (prefix ``/api``) serves the token
endpoint polled by provisioned workflows and the provisioning admin calls.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import (
    db_session,
    get_orchestrator,
    get_registry,
    get_settings,
    get_token_manager,
    require_internal_key,
)
from api.errors import error_response
from config.settings import Settings
from connectors.registry import ConnectorRegistry
from connectors.token_manager import TokenRefreshManager
from database.tenants import get_tenant
from onboarding.orchestrator import OnboardingOrchestrator
from utils.exceptions import CodeExchangeFailed, TenantNotFound
from utils.schemas import AccessTokenResponse, ProvisioningResult, TenantProvisioningView

logger = logging.getLogger(__name__)

oauth_router = APIRouter(tags=["oauth"])
router = APIRouter()


# ── OAuth connect / callback ───────────────────────────────────────────


@oauth_router.get("/providers")
async def list_providers(
    registry: ConnectorRegistry = Depends(get_registry),
) -> List[Dict[str, str]]:
    """Configured mailbox providers, for the onboarding page."""
    return [
        {"provider": slug, "display_name": registry.get(slug).display_name}
        for slug in registry.list_configured()
    ]


@oauth_router.get("/{provider}/connect")
async def connect(
    provider: str,
    tenant_id: Optional[str] = Query(None, alias="tenantId"),
    company_name: Optional[str] = Query(None, alias="companyName"),
    orchestrator: OnboardingOrchestrator = Depends(get_orchestrator),
):
    """Redirect the browser to the provider's consent screen."""
    if not tenant_id:
        return error_response(status.HTTP_400_BAD_REQUEST, "MISSING_TENANT_ID", "tenantId is required")
    auth_url = orchestrator.build_connect_url(provider, tenant_id, company_name)
    return RedirectResponse(auth_url, status_code=status.HTTP_302_FOUND)


@oauth_router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    settings: Settings = Depends(get_settings),
    orchestrator: OnboardingOrchestrator = Depends(get_orchestrator),
):
    """
    Provider redirects here after consent.

    Verifies state, exchanges the code, saves tokens and provisions the
    tenant's workflow, then sends the browser back to the onboarding page.
    Provisioning failures do not block the redirect.
    """
    if error or not code or not state:
        logger.warning("%s callback without code (error=%s)", provider, error or "missing parameters")
        raise CodeExchangeFailed("Authorization was not granted")

    outcome = await orchestrator.handle_callback(provider, code, state)

    query = urlencode({"tenantId": outcome.tenant_id, f"{provider}_success": "true"})
    target = f"{settings.backend_url.rstrip('/')}/onboarding.html?{query}"
    return RedirectResponse(target, status_code=status.HTTP_302_FOUND)


# ── Token endpoint for provisioned workflows ───────────────────────────


@router.get(
    "/token/{provider}/{tenant_id}",
    response_model=AccessTokenResponse,
    dependencies=[Depends(require_internal_key)],
)
async def get_access_token(
    provider: str,
    tenant_id: str,
    registry: ConnectorRegistry = Depends(get_registry),
    token_manager: TokenRefreshManager = Depends(get_token_manager),
) -> AccessTokenResponse:
    registry.get(provider)
    access_token = await token_manager.get_valid_access_token(tenant_id, provider=provider)
    return AccessTokenResponse(
        access_token=access_token,
        tenant_id=tenant_id,
        timestamp=datetime.now(timezone.utc),
    )


@router.post(
    "/token/{provider}/{tenant_id}/refresh",
    response_model=AccessTokenResponse,
    dependencies=[Depends(require_internal_key)],
)
async def refresh_access_token(
    provider: str,
    tenant_id: str,
    registry: ConnectorRegistry = Depends(get_registry),
    token_manager: TokenRefreshManager = Depends(get_token_manager),
) -> AccessTokenResponse:
    registry.get(provider)
    access_token = await token_manager.force_refresh(tenant_id, provider=provider)
    return AccessTokenResponse(
        access_token=access_token,
        tenant_id=tenant_id,
        timestamp=datetime.now(timezone.utc),
    )


# ── Provisioning admin ─────────────────────────────────────────────────


@router.get(
    "/provisioning/{tenant_id}",
    response_model=TenantProvisioningView,
    dependencies=[Depends(require_internal_key)],
)
async def provisioning_status(
    tenant_id: str,
    session: AsyncSession = Depends(db_session),
) -> TenantProvisioningView:
    tenant = await get_tenant(session, tenant_id)
    if tenant is None:
        raise TenantNotFound(tenant_id)
    tokens = tenant.email_oauth_tokens or {}
    expires_at = tokens.get("expires_at")
    return TenantProvisioningView(
        tenant_id=tenant.tenant_id,
        email_provider=tenant.email_provider,
        has_tokens=bool(tokens),
        token_expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
        credential_id=tenant.n8n_credential_id,
        workflow_id=tenant.n8n_workflow_id,
        project_id=tenant.n8n_project_id,
        status=tenant.provisioning_status,
        last_error=tenant.provisioning_error,
    )


@router.post(
    "/provisioning/{tenant_id}/retry",
    response_model=ProvisioningResult,
    dependencies=[Depends(require_internal_key)],
)
async def retry_provisioning(
    tenant_id: str,
    orchestrator: OnboardingOrchestrator = Depends(get_orchestrator),
) -> ProvisioningResult:
    """Resume provisioning from the last persisted step; step failures are in the body."""
    return await orchestrator.retry_provisioning(tenant_id)
