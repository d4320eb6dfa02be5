"""
Tenant row helpers — every mutation is a scoped write keyed by ``tenant_id``.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from config.constants import STATUS_NOT_STARTED
from database.models import Tenant

logger = logging.getLogger(__name__)


async def get_tenant(session: AsyncSession, tenant_id: str) -> Optional[Tenant]:
    result = await session.execute(select(Tenant).where(Tenant.tenant_id == tenant_id))
    return result.scalar_one_or_none()


async def ensure_tenant_exists(
    session: AsyncSession,
    tenant_id: str,
    company_name: Optional[str] = None,
    email_filters: Optional[list[str]] = None,
) -> None:
    """Create a ``Tenant`` row if one does not already exist (idempotent)."""
    values = {
        "tenant_id": tenant_id,
        "company_name": company_name or f"Company {tenant_id}",
        "email_filters": list(email_filters or []),
        "provisioning_status": STATUS_NOT_STARTED,
    }
    dialect = session.bind.dialect.name if session.bind is not None else "postgresql"
    insert = sqlite_insert if dialect == "sqlite" else pg_insert
    stmt = insert(Tenant).values(**values).on_conflict_do_nothing(index_elements=["tenant_id"])
    await session.execute(stmt)
    await session.flush()


async def update_tenant(session: AsyncSession, tenant_id: str, **fields: Any) -> int:
    """Write ``fields`` on one tenant row; returns the number of rows touched."""
    result = await session.execute(
        update(Tenant)
        .where(Tenant.tenant_id == tenant_id)
        .values(**fields)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.warning("update_tenant: no row for tenant %s", tenant_id)
    return result.rowcount
