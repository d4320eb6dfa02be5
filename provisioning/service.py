"""ResourceProvisioner — idempotently creates a tenant's n8n credential, workflow and project."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.constants import (
    STATUS_COMPLETE,
    STATUS_CREDENTIAL_CREATED,
    STATUS_CREDENTIAL_SKIPPED,
    STATUS_WORKFLOW_CREATED,
)
from config.settings import Settings
from connectors.vault import CredentialVault
from database.models import Tenant
from database.tenants import get_tenant, update_tenant
from provisioning.lease import ProvisioningLeases
from provisioning.n8n_client import N8nClient
from provisioning.workflow_templates import build_workflow, credential_payload
from utils.exceptions import (
    CredentialProvisionFailed,
    TenantNotFound,
    WorkflowEngineError,
    WorkflowProvisionFailed,
)
from utils.schemas import OnboardingStep, ProvisioningResult, StepFailure, TokenBundle

logger = logging.getLogger(__name__)

_FOLDERS_UNSUPPORTED = (403, 404)


class ResourceProvisioner:
    """
    Creates the engine-side resources a tenant's mailbox automation needs.

    Every ``ensure_*`` step first looks for an id already recorded on the
    tenant row and persists its result immediately, so a retried or
    overlapping run resumes instead of creating duplicates.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        vault: CredentialVault,
        n8n: N8nClient,
        leases: Optional[ProvisioningLeases] = None,
    ):
        self.settings = settings
        self._session_factory = session_factory
        self._vault = vault
        self._n8n = n8n
        self._leases = leases or ProvisioningLeases(session_factory, 0)

    async def _load(self, tenant_id: str) -> Tenant:
        async with self._session_factory() as session:
            tenant = await get_tenant(session, tenant_id)
        if tenant is None:
            raise TenantNotFound(tenant_id)
        return tenant

    async def _save(self, tenant_id: str, **fields) -> None:
        async with self._session_factory() as session, session.begin():
            await update_tenant(session, tenant_id, **fields)

    def _client_credentials(self, provider: str) -> Tuple[str, str]:
        if provider == "gmail":
            return self.settings.google_client_id, self.settings.google_client_secret
        return self.settings.microsoft_client_id, self.settings.microsoft_client_secret

    # ── steps ───────────────────────────────────────────────────────────

    async def ensure_provider_credential(
        self, tenant_id: str, bundle: TokenBundle, provider: str
    ) -> Optional[str]:
        """
        Return the tenant's engine credential id, creating it if needed.

        An engine rejection is not fatal: the tenant is marked
        ``CREDENTIAL_SKIPPED`` and ``None`` is returned so the workflow can
        still be created without credential linkage.
        """
        tenant = await self._load(tenant_id)
        if tenant.n8n_credential_id:
            logger.info("Reusing n8n credential %s for tenant %s", tenant.n8n_credential_id, tenant_id)
            return tenant.n8n_credential_id

        client_id, client_secret = self._client_credentials(provider)
        cred_type, name, data = credential_payload(provider, tenant_id, bundle, client_id, client_secret)
        try:
            created = await self._n8n.create_credential(cred_type, name, data)
        except WorkflowEngineError as exc:
            failure = CredentialProvisionFailed(f"Credential creation failed: {exc}")
            logger.warning("Tenant %s: %s; continuing without credential", tenant_id, failure.message)
            await self._save(
                tenant_id,
                provisioning_status=STATUS_CREDENTIAL_SKIPPED,
                provisioning_error=failure.message,
            )
            return None

        credential_id = str(created["id"])
        # an existing workflow is relinked to this credential by the workflow step
        await self._save(
            tenant_id,
            n8n_credential_id=credential_id,
            provisioning_status=STATUS_CREDENTIAL_CREATED,
            provisioning_error=None,
        )
        return credential_id

    async def ensure_workflow(
        self, tenant_id: str, provider: str, credential_id: Optional[str]
    ) -> str:
        """Return the tenant's workflow id; raises ``WorkflowProvisionFailed``."""
        workflow_id, _ = await self._ensure_workflow(tenant_id, provider, credential_id)
        return workflow_id

    async def _ensure_workflow(
        self, tenant_id: str, provider: str, credential_id: Optional[str]
    ) -> Tuple[str, bool]:
        tenant = await self._load(tenant_id)
        if tenant.n8n_workflow_id:
            workflow_id = tenant.n8n_workflow_id
            if tenant.provisioning_status in (STATUS_WORKFLOW_CREATED, STATUS_COMPLETE):
                logger.info("Workflow already exists for tenant %s: %s", tenant_id, workflow_id)
                return workflow_id, False
            # stopped before activation, or a credential was created since
            if credential_id is not None:
                await self._relink(tenant_id, workflow_id, self._render(tenant, provider, credential_id))
            await self._activate(tenant_id, workflow_id)
            return workflow_id, False

        try:
            created = await self._n8n.create_workflow(self._render(tenant, provider, credential_id))
        except WorkflowEngineError as exc:
            await self._save(tenant_id, provisioning_error=f"Workflow creation failed: {exc}")
            raise WorkflowProvisionFailed(f"Workflow creation failed: {exc}") from exc
        workflow_id = str(created["id"])

        # recorded before activation so a retry never creates a second workflow
        await self._save(tenant_id, n8n_workflow_id=workflow_id)
        await self._activate(tenant_id, workflow_id)
        return workflow_id, True

    def _render(self, tenant: Tenant, provider: str, credential_id: Optional[str]) -> Dict[str, Any]:
        return build_workflow(
            provider,
            tenant.tenant_id,
            credential_id,
            tenant.email_filters or self.settings.default_email_filters,
            self.settings.backend_url,
        )

    async def _relink(self, tenant_id: str, workflow_id: str, workflow: Dict[str, Any]) -> None:
        try:
            await self._n8n.update_workflow(workflow_id, workflow)
        except WorkflowEngineError as exc:
            await self._save(tenant_id, provisioning_error=f"Workflow update failed: {exc}")
            raise WorkflowProvisionFailed(f"Workflow {workflow_id} update failed: {exc}") from exc

    async def _activate(self, tenant_id: str, workflow_id: str) -> None:
        try:
            await self._n8n.activate_workflow(workflow_id)
        except WorkflowEngineError as exc:
            await self._save(tenant_id, provisioning_error=f"Workflow activation failed: {exc}")
            raise WorkflowProvisionFailed(f"Workflow {workflow_id} activation failed: {exc}") from exc
        await self._save(tenant_id, provisioning_status=STATUS_WORKFLOW_CREATED)

    async def ensure_project_folder(self, tenant_name: str, tenant_id: str) -> Optional[str]:
        """
        Look up or create the tenant's n8n project.

        Returns ``None`` when the engine edition has no projects (403/404)
        or the call fails; folders are optional.
        """
        tenant = await self._load(tenant_id)
        if tenant.n8n_project_id:
            return tenant.n8n_project_id

        name = f"{tenant_name} ({tenant_id})"
        try:
            existing = [p for p in await self._n8n.list_projects() if p.get("name") == name]
            project = existing[0] if existing else await self._n8n.create_project(name)
            project_id = str(project["id"])
        except WorkflowEngineError as exc:
            if exc.status_code in _FOLDERS_UNSUPPORTED:
                logger.info("n8n projects unavailable (HTTP %s); skipping folder for %s", exc.status_code, tenant_id)
            else:
                logger.warning("Project folder lookup failed for tenant %s: %s", tenant_id, exc)
            return None
        except KeyError:
            logger.warning("n8n returned a project without id for tenant %s", tenant_id)
            return None

        await self._save(tenant_id, n8n_project_id=project_id)
        return project_id

    # ── full run ────────────────────────────────────────────────────────

    async def provision(
        self,
        tenant_id: str,
        provider: Optional[str] = None,
        bundle: Optional[TokenBundle] = None,
    ) -> ProvisioningResult:
        """
        Run project → credential → workflow for a tenant whose tokens are saved.

        Step failures are collected on the result instead of raised.
        """
        if provider is None or bundle is None:
            provider, bundle = await self._vault.get_tokens_with_provider(tenant_id)

        async with self._leases.hold(tenant_id) as owned:
            if not owned:
                tenant = await self._load(tenant_id)
                return self._result(tenant, provider, workflow_created=False, failures=[])
            return await self._run(tenant_id, provider, bundle)

    async def _run(self, tenant_id: str, provider: str, bundle: TokenBundle) -> ProvisioningResult:
        failures = []
        tenant = await self._load(tenant_id)
        project_id = await self.ensure_project_folder(tenant.company_name or tenant_id, tenant_id)

        credential_id = await self.ensure_provider_credential(tenant_id, bundle, provider)
        if credential_id is None:
            tenant = await self._load(tenant_id)
            failures.append(
                StepFailure(
                    step=OnboardingStep.CREDENTIAL_PROVISIONED,
                    code=CredentialProvisionFailed().code,
                    reason=tenant.provisioning_error or "credential not created",
                )
            )

        workflow_created = False
        try:
            workflow_id, workflow_created = await self._ensure_workflow(tenant_id, provider, credential_id)
        except WorkflowProvisionFailed as exc:
            logger.error("Tenant %s needs manual workflow remediation: %s", tenant_id, exc.message)
            failures.append(
                StepFailure(step=OnboardingStep.WORKFLOW_PROVISIONED, code=exc.code, reason=exc.message)
            )
        else:
            if workflow_created and project_id:
                try:
                    await self._n8n.transfer_workflow(workflow_id, project_id)
                except WorkflowEngineError as exc:
                    logger.warning("Could not move workflow %s into project %s: %s", workflow_id, project_id, exc)
            if credential_id is not None:
                await self._save(tenant_id, provisioning_status=STATUS_COMPLETE, provisioning_error=None)
            else:
                await self._save(tenant_id, provisioning_status=STATUS_COMPLETE)

        tenant = await self._load(tenant_id)
        result = self._result(tenant, provider, workflow_created, failures)
        logger.info(
            "Provisioning for tenant %s: status=%s credential=%s workflow=%s project=%s failures=%d",
            tenant_id, result.status, result.credential_id, result.workflow_id, result.project_id, len(failures),
        )
        return result

    @staticmethod
    def _result(tenant: Tenant, provider: str, workflow_created: bool, failures) -> ProvisioningResult:
        return ProvisioningResult(
            tenant_id=tenant.tenant_id,
            provider=provider,
            credential_id=tenant.n8n_credential_id,
            workflow_id=tenant.n8n_workflow_id,
            project_id=tenant.n8n_project_id,
            workflow_created=workflow_created,
            status=tenant.provisioning_status,
            failures=failures,
        )
