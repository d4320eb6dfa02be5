"""
ConnectorRegistry — builds and serves the configured OAuth connectors.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

import httpx

from config.settings import Settings
from connectors.base import BaseConnector
from connectors.gmail import GmailConnector
from connectors.outlook import OutlookConnector
from utils.exceptions import UnknownProvider

logger = logging.getLogger(__name__)

# ── All known connectors; add new ones here ─────────────────────────────

_CONNECTOR_CLASSES = (GmailConnector, OutlookConnector)


class ConnectorRegistry:
    """Holds one connector instance per provider slug."""

    def __init__(self, connectors: Optional[List[BaseConnector]] = None):
        self._connectors: Dict[str, BaseConnector] = {}
        for conn in connectors or []:
            self.register(conn)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ConnectorRegistry":
        return cls([klass(settings, transport=transport) for klass in _CONNECTOR_CLASSES])

    def register(self, conn: BaseConnector) -> None:
        if not conn.is_configured():
            logger.warning(
                "Connector %s skipped — not configured (missing client_id/secret)",
                conn.provider_name,
            )
            return
        self._connectors[conn.provider_name] = conn
        logger.info("Connector registered: %s (%s)", conn.display_name, conn.provider_name)

    def get(self, provider: str) -> BaseConnector:
        """Get a connector by provider name; raises ``UnknownProvider``."""
        conn = self._connectors.get(provider)
        if conn is None:
            raise UnknownProvider(provider)
        return conn

    def list_configured(self) -> List[str]:
        return list(self._connectors.keys())
