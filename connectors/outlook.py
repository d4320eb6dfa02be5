"""
OutlookConnector — OAuth2 confidential-client flow for Outlook mailboxes.

Talks to the Microsoft identity platform v2.0 token endpoint directly
instead of going through an MSAL token cache: MSAL keeps the refresh
token inside its cache, while the workflow engine credential needs the
raw refresh token.  Microsoft rotates refresh tokens, so a refresh
response usually carries a new one that must be persisted.
"""

from __future__ import annotations

from typing import Any, Dict, List
from urllib.parse import urlencode

from connectors.base import BaseConnector
from utils.schemas import OutlookTokenResponse

_MS_LOGIN_BASE = "https://login.microsoftonline.com"


class OutlookConnector(BaseConnector):
    """OAuth2 connector for Outlook / Microsoft 365 mailboxes."""

    @property
    def provider_name(self) -> str:
        return "outlook"

    @property
    def display_name(self) -> str:
        return "Outlook"

    @property
    def scopes(self) -> List[str]:
        return [
            "openid",
            "email",
            "offline_access",
            "https://graph.microsoft.com/Mail.Read",
        ]

    @property
    def authority(self) -> str:
        return f"{_MS_LOGIN_BASE}/{self.settings.microsoft_tenant_id}/oauth2/v2.0"

    @property
    def token_url(self) -> str:
        return f"{self.authority}/token"

    def is_configured(self) -> bool:
        return bool(self.settings.microsoft_client_id and self.settings.microsoft_client_secret)

    def get_auth_url(self, state: str) -> str:
        params = {
            "client_id": self.settings.microsoft_client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "response_mode": "query",
            "scope": " ".join(self.scopes),  # offline_access gets refresh_token
            "prompt": "consent",
            "state": state,
        }
        return f"{self.authority}/authorize?{urlencode(params)}"

    def _code_grant(self, code: str) -> Dict[str, str]:
        return {
            "client_id": self.settings.microsoft_client_id,
            "client_secret": self.settings.microsoft_client_secret,
            "code": code,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
            "scope": " ".join(self.scopes),
        }

    def _refresh_grant(self, refresh_token: str) -> Dict[str, str]:
        return {
            "client_id": self.settings.microsoft_client_id,
            "client_secret": self.settings.microsoft_client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
            "scope": " ".join(self.scopes),
        }

    def _parse_exchange(self, body: Dict[str, Any]) -> OutlookTokenResponse:
        return OutlookTokenResponse(**{k: v for k, v in body.items() if k != "provider"})
