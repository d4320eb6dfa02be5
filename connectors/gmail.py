"""
GmailConnector — OAuth2 web flow for Gmail.

Standard authorization-code grant against Google's token endpoint.
Google issues a refresh token only when the consent screen is shown,
hence ``prompt=consent`` on every authorization URL.
"""

from __future__ import annotations

from typing import Any, Dict, List
from urllib.parse import urlencode

from connectors.base import BaseConnector
from utils.schemas import GmailTokenResponse

# Google OAuth2 endpoints
_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"


class GmailConnector(BaseConnector):
    """OAuth2 connector for Gmail."""

    @property
    def provider_name(self) -> str:
        return "gmail"

    @property
    def display_name(self) -> str:
        return "Gmail"

    @property
    def scopes(self) -> List[str]:
        return [
            "https://www.googleapis.com/auth/gmail.readonly",
            "https://mail.google.com/",
        ]

    @property
    def token_url(self) -> str:
        return _GOOGLE_TOKEN_URL

    def is_configured(self) -> bool:
        return bool(self.settings.google_client_id and self.settings.google_client_secret)

    def get_auth_url(self, state: str) -> str:
        params = {
            "client_id": self.settings.google_client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "access_type": "offline",       # gets refresh_token
            "prompt": "consent",            # force consent to always get refresh_token
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{_GOOGLE_AUTH_URL}?{urlencode(params)}"

    def _code_grant(self, code: str) -> Dict[str, str]:
        return {
            "code": code,
            "client_id": self.settings.google_client_id,
            "client_secret": self.settings.google_client_secret,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        }

    def _refresh_grant(self, refresh_token: str) -> Dict[str, str]:
        return {
            "client_id": self.settings.google_client_id,
            "client_secret": self.settings.google_client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

    def _parse_exchange(self, body: Dict[str, Any]) -> GmailTokenResponse:
        return GmailTokenResponse(**{k: v for k, v in body.items() if k != "provider"})
