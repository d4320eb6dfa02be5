"""
Pydantic schemas shared by the connectors, the provisioner and the API.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field


# ═══════════════════════════════════════════════════════════════════════════════
# Tokens
# ═══════════════════════════════════════════════════════════════════════════════


class TokenBundle(BaseModel):
    """Canonical, provider-independent OAuth token set (plaintext, in memory only)."""

    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_at: datetime
    scope: str = ""

    def is_expired(self, margin_seconds: int = 0, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at - timedelta(seconds=margin_seconds)


class RefreshedToken(BaseModel):
    access_token: str
    expires_at: datetime
    token_type: str = "Bearer"
    refresh_token: Optional[str] = None  # only when the provider rotates it


class GmailTokenResponse(BaseModel):
    """Raw body of Google's token endpoint."""

    provider: Literal["gmail"] = "gmail"
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = 3600
    token_type: str = "Bearer"
    scope: str = ""
    id_token: Optional[str] = None


class OutlookTokenResponse(BaseModel):
    """Raw body of the Microsoft identity platform v2.0 token endpoint."""

    provider: Literal["outlook"] = "outlook"
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = 3600
    ext_expires_in: Optional[int] = None
    token_type: str = "Bearer"
    scope: str = ""
    id_token: Optional[str] = None


TokenExchangeResult = Union[GmailTokenResponse, OutlookTokenResponse]


def normalize_exchange(result: TokenExchangeResult, issued_at: Optional[datetime] = None) -> TokenBundle:
    """Collapse a provider-specific token response into a ``TokenBundle``."""
    issued_at = issued_at or datetime.now(timezone.utc)
    return TokenBundle(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type=result.token_type or "Bearer",
        expires_at=issued_at + timedelta(seconds=result.expires_in),
        scope=result.scope,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# Provisioning / onboarding outcomes
# ═══════════════════════════════════════════════════════════════════════════════


class OnboardingStep(str, Enum):
    AWAIT_CALLBACK = "AWAIT_CALLBACK"
    STATE_VERIFIED = "STATE_VERIFIED"
    CODE_EXCHANGED = "CODE_EXCHANGED"
    TENANT_UPSERTED = "TENANT_UPSERTED"
    CREDENTIAL_PROVISIONED = "CREDENTIAL_PROVISIONED"
    WORKFLOW_PROVISIONED = "WORKFLOW_PROVISIONED"
    DONE = "DONE"


class StepFailure(BaseModel):
    """``FAILED(step, reason)`` for one step of the callback."""

    step: OnboardingStep
    code: str
    reason: str


class ProvisioningResult(BaseModel):
    tenant_id: str
    provider: str
    credential_id: Optional[str] = None
    workflow_id: Optional[str] = None
    project_id: Optional[str] = None
    workflow_created: bool = False
    status: str
    failures: List[StepFailure] = Field(default_factory=list)


class CallbackOutcome(BaseModel):
    tenant_id: str
    provider: str
    reached: OnboardingStep
    provisioning: Optional[ProvisioningResult] = None
    failures: List[StepFailure] = Field(default_factory=list)

    @property
    def fully_provisioned(self) -> bool:
        return self.reached == OnboardingStep.DONE and not self.failures


class TenantProvisioningView(BaseModel):
    """Public view of a tenant's provisioning state (never carries tokens)."""

    tenant_id: str
    email_provider: Optional[str] = None
    has_tokens: bool = False
    token_expires_at: Optional[datetime] = None
    credential_id: Optional[str] = None
    workflow_id: Optional[str] = None
    project_id: Optional[str] = None
    status: str
    last_error: Optional[str] = None


class AccessTokenResponse(BaseModel):
    success: bool = True
    access_token: str
    tenant_id: str
    timestamp: datetime


class ErrorBody(BaseModel):
    error: str
    detail: str
