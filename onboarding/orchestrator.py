"""
Tenant onboarding orchestrator — drives one OAuth callback end to end.

    AWAIT_CALLBACK → STATE_VERIFIED → CODE_EXCHANGED → TENANT_UPSERTED
        → CREDENTIAL_PROVISIONED → WORKFLOW_PROVISIONED → DONE

Failures up to and including TENANT_UPSERTED propagate and abort the
callback.  Anything later is recorded as a ``StepFailure`` on the outcome
and logged; the tokens are already saved and provisioning can be retried.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from auth.oauth_state import StateSigner
from config.constants import TENANT_ID_PATTERN
from config.settings import Settings
from connectors.registry import ConnectorRegistry
from connectors.vault import CredentialVault
from provisioning.service import ResourceProvisioner
from utils.exceptions import InvalidState, InvalidTenantId, OnboardingError
from utils.schemas import CallbackOutcome, OnboardingStep, ProvisioningResult, StepFailure

logger = logging.getLogger(__name__)


class OnboardingOrchestrator:
    def __init__(
        self,
        settings: Settings,
        signer: StateSigner,
        registry: ConnectorRegistry,
        vault: CredentialVault,
        provisioner: ResourceProvisioner,
    ):
        self.settings = settings
        self._signer = signer
        self._registry = registry
        self._vault = vault
        self._provisioner = provisioner

    def build_connect_url(self, provider: str, tenant_id: str, company_name: Optional[str] = None) -> str:
        """Sign the flow context and return the provider's consent URL."""
        connector = self._registry.get(provider)
        if not TENANT_ID_PATTERN.fullmatch(tenant_id):
            raise InvalidTenantId()
        payload: Dict[str, Any] = {"tenantId": tenant_id, "provider": provider}
        if company_name:
            payload["companyName"] = company_name
        state = self._signer.create(payload)
        logger.info("OAuth connect started: tenant=%s provider=%s", tenant_id, provider)
        return connector.get_auth_url(state)

    async def handle_callback(self, provider: str, code: str, state: str) -> CallbackOutcome:
        connector = self._registry.get(provider)

        # 1. Verify state
        data = self._signer.verify(state)
        tenant_id = data.get("tenantId")
        if not isinstance(tenant_id, str) or not TENANT_ID_PATTERN.fullmatch(tenant_id):
            logger.warning("OAuth state rejected: missing or malformed tenantId in payload")
            raise InvalidState()
        if data.get("provider") != provider:
            logger.warning(
                "OAuth state rejected: issued for %s, used on %s callback",
                data.get("provider"), provider,
            )
            raise InvalidState()

        # 2. Exchange code
        bundle = await connector.exchange_code(code)

        # 3. Persist tokens
        await self._vault.set_tokens(
            tenant_id,
            provider,
            bundle,
            company_name=data.get("companyName"),
        )
        logger.info("OAuth connected: tenant=%s provider=%s", tenant_id, provider)

        # 4. Provision engine resources
        try:
            result = await self._provisioner.provision(tenant_id, provider=provider, bundle=bundle)
        except (OnboardingError, SQLAlchemyError) as exc:
            error_code = getattr(exc, "code", type(exc).__name__)
            logger.exception("Provisioning aborted for tenant %s after tokens were saved", tenant_id)
            return CallbackOutcome(
                tenant_id=tenant_id,
                provider=provider,
                reached=OnboardingStep.TENANT_UPSERTED,
                failures=[
                    StepFailure(step=OnboardingStep.CREDENTIAL_PROVISIONED, code=error_code, reason=str(exc))
                ],
            )

        outcome = CallbackOutcome(
            tenant_id=tenant_id,
            provider=provider,
            reached=_reached(result),
            provisioning=result,
            failures=list(result.failures),
        )
        if outcome.failures:
            logger.warning(
                "Tenant %s onboarded with partial provisioning: %s",
                tenant_id,
                ", ".join(f"{f.step.value}={f.code}" for f in outcome.failures),
            )
        return outcome

    async def retry_provisioning(self, tenant_id: str) -> ProvisioningResult:
        """Resume provisioning from the last persisted step using stored tokens."""
        logger.info("Retrying provisioning for tenant %s", tenant_id)
        return await self._provisioner.provision(tenant_id)


def _reached(result: ProvisioningResult) -> OnboardingStep:
    if any(f.step == OnboardingStep.WORKFLOW_PROVISIONED for f in result.failures):
        return OnboardingStep.CREDENTIAL_PROVISIONED
    if result.workflow_id is None:
        # another run holds the provisioning lease
        return OnboardingStep.TENANT_UPSERTED
    return OnboardingStep.DONE
