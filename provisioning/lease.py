"""
Per-tenant advisory lease around a provisioning run.

A lease is a row in ``provisioning_leases`` with an expiry; a second run
for the same tenant finds a live lease and backs off.  Crashed holders
are recovered once their lease expires.  The lease only narrows the
double-click window; the check-before-create guards in the provisioner
stay the correctness backstop.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import ProvisioningLease

logger = logging.getLogger(__name__)


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class ProvisioningLeases:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], ttl_seconds: int):
        self._session_factory = session_factory
        self.ttl_seconds = ttl_seconds

    @property
    def enabled(self) -> bool:
        return self.ttl_seconds > 0

    async def acquire(self, tenant_id: str, holder: str) -> bool:
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=self.ttl_seconds)
        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(
                    select(ProvisioningLease).where(ProvisioningLease.tenant_id == tenant_id)
                )
                lease = result.scalar_one_or_none()
                if lease is None:
                    session.add(ProvisioningLease(tenant_id=tenant_id, holder=holder, expires_at=expires_at))
                elif _aware(lease.expires_at) <= now:
                    logger.info("Taking over expired provisioning lease for tenant %s", tenant_id)
                    lease.holder = holder
                    lease.expires_at = expires_at
                else:
                    return False
        except IntegrityError:
            return False
        return True

    async def release(self, tenant_id: str, holder: str) -> None:
        async with self._session_factory() as session, session.begin():
            await session.execute(
                delete(ProvisioningLease).where(
                    ProvisioningLease.tenant_id == tenant_id,
                    ProvisioningLease.holder == holder,
                )
            )

    @asynccontextmanager
    async def hold(self, tenant_id: str) -> AsyncIterator[bool]:
        """Yield ``True`` when this run owns the tenant, ``False`` otherwise."""
        if not self.enabled:
            yield True
            return
        holder = uuid.uuid4().hex
        acquired = await self.acquire(tenant_id, holder)
        if not acquired:
            logger.info("Provisioning already in progress for tenant %s", tenant_id)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release(tenant_id, holder)
