"""Exception hierarchy for OAuth onboarding and provisioning."""

from __future__ import annotations

from typing import Optional


class OnboardingError(Exception):
    """Base exception for all onboarding errors."""

    def __init__(self, message: str = "", code: str = "ONBOARDING_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class InvalidState(OnboardingError):
    """Raised when an OAuth state is malformed, tampered with, or expired.

    The message is deliberately identical for every cause.
    """

    def __init__(self, message: str = "Invalid OAuth state"):
        super().__init__(message, code="INVALID_STATE")


class UnknownProvider(OnboardingError):
    def __init__(self, provider: str):
        super().__init__(f"Unknown email provider: {provider}", code="UNKNOWN_PROVIDER")


class InvalidTenantId(OnboardingError):
    def __init__(self, message: str = "tenantId must be 1-64 letters, digits, hyphens or underscores"):
        super().__init__(message, code="INVALID_TENANT_ID")


class CodeExchangeFailed(OnboardingError):
    """Raised when the identity provider rejects an authorization code."""

    def __init__(self, message: str = "Authorization code exchange failed"):
        super().__init__(message, code="CODE_EXCHANGE_FAILED")


class TokenPersistFailed(OnboardingError):
    """Raised when the token bundle cannot be written to the store."""

    def __init__(self, message: str = "Could not persist OAuth tokens"):
        super().__init__(message, code="TOKEN_PERSIST_FAILED")


class NoTokensFound(OnboardingError):
    """Raised when a tenant never completed OAuth."""

    def __init__(self, tenant_id: str):
        super().__init__(f"No OAuth tokens for tenant {tenant_id}", code="NO_TOKENS")


class RefreshFailed(OnboardingError):
    """Raised when the provider rejects the refresh-token grant.

    Usually means the user revoked access; a new consent is required.
    """

    def __init__(self, message: str = "Token refresh failed, reconnect required"):
        super().__init__(message, code="REFRESH_FAILED")


class DecryptionError(OnboardingError):
    def __init__(self, message: str = "Could not decrypt stored secret"):
        super().__init__(message, code="DECRYPTION_FAILED")


class TenantNotFound(OnboardingError):
    def __init__(self, tenant_id: str):
        super().__init__(f"Tenant {tenant_id} not found", code="TENANT_NOT_FOUND")


class WorkflowEngineError(OnboardingError):
    """Raised when the workflow engine answers with an error or is unreachable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message, code="WORKFLOW_ENGINE_ERROR")


class CredentialProvisionFailed(OnboardingError):
    def __init__(self, message: str = "Engine credential creation failed"):
        super().__init__(message, code="CREDENTIAL_PROVISION_FAILED")


class WorkflowProvisionFailed(OnboardingError):
    def __init__(self, message: str = "Engine workflow creation failed"):
        super().__init__(message, code="WORKFLOW_PROVISION_FAILED")
