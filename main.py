"""
Tenant mailbox onboarding service — application entry point.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.errors import register_exception_handlers
from api.middleware import register_middleware
from api.routes import oauth_router, router as api_router
from auth.oauth_state import StateSigner
from config.settings import Settings, get_settings
from connectors.encryption import TokenCipher
from connectors.registry import ConnectorRegistry
from connectors.token_manager import TokenRefreshManager
from connectors.vault import CredentialVault
from database.session import build_engine, build_session_factory, create_all
from onboarding.orchestrator import OnboardingOrchestrator
from provisioning.lease import ProvisioningLeases
from provisioning.n8n_client import N8nClient
from provisioning.service import ResourceProvisioner

logger = logging.getLogger(__name__)


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
        stream=sys.stdout,
    )
    for _noisy in ("httpcore", "httpx", "aiosqlite", "asyncio"):
        logging.getLogger(_noisy).setLevel(logging.WARNING)


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the application and its components.

    ``transport`` replaces the network for every outbound httpx call
    (identity providers and n8n); tests pass an ``httpx.MockTransport``.
    """
    settings = settings or get_settings()
    configure_logging(settings.debug)

    app = FastAPI(
        title="Tenant Mailbox Onboarding",
        version="1.0.0",
        description="OAuth mailbox onboarding and per-tenant n8n provisioning.",
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)
    register_exception_handlers(app)

    # Components
    engine = build_engine(settings.database_url)
    session_factory = build_session_factory(engine)
    vault = CredentialVault(session_factory, TokenCipher.from_settings(settings))
    registry = ConnectorRegistry.from_settings(settings, transport=transport)
    n8n = N8nClient(
        settings.n8n_api_url,
        settings.n8n_api_key,
        timeout=settings.http_timeout_seconds,
        transport=transport,
    )
    provisioner = ResourceProvisioner(
        settings,
        session_factory,
        vault,
        n8n,
        leases=ProvisioningLeases(session_factory, settings.provisioning_lease_seconds),
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.vault = vault
    app.state.registry = registry
    app.state.token_manager = TokenRefreshManager(
        vault, registry, margin_seconds=settings.token_refresh_margin_seconds
    )
    app.state.orchestrator = OnboardingOrchestrator(
        settings,
        StateSigner(settings.oauth_state_secret, ttl_seconds=settings.state_ttl_seconds),
        registry,
        vault,
        provisioner,
    )

    # Routes
    app.include_router(oauth_router, prefix="/auth")
    app.include_router(api_router, prefix="/api")

    @app.on_event("startup")
    async def on_startup():
        await create_all(engine)
        logger.info(
            "Providers configured: %s; n8n at %s",
            ", ".join(registry.list_configured()) or "none",
            settings.n8n_api_url,
        )
        logger.info("Application ready to accept requests.")

    @app.on_event("shutdown")
    async def on_shutdown():
        await engine.dispose()

    return app


if __name__ == "__main__":
    config = get_settings()
    uvicorn.run(
        "main:create_app",
        factory=True,
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
