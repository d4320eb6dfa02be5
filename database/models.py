"""
SQLAlchemy ORM models.

Column types are kept portable (JSON / String / DateTime) so the same
models run on PostgreSQL in production and SQLite in tests.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, String, Text
from sqlalchemy.orm import DeclarativeBase

from config.constants import STATUS_NOT_STARTED


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    tenant_id = Column(String(64), primary_key=True)
    company_name = Column(String(255))
    email = Column(String(255))
    email_provider = Column(String(16))            # "gmail" | "outlook" | NULL
    email_oauth_tokens = Column(JSON)              # encrypted bundle, see connectors.vault
    email_filters = Column(JSON, default=list)
    n8n_credential_id = Column(String(64))
    n8n_workflow_id = Column(String(64))
    n8n_project_id = Column(String(64))
    provisioning_status = Column(String(32), nullable=False, default=STATUS_NOT_STARTED)
    provisioning_error = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class ProvisioningLease(Base):
    """Short-lived advisory lock row guarding one tenant's provisioning run."""

    __tablename__ = "provisioning_leases"

    tenant_id = Column(String(64), primary_key=True)
    holder = Column(String(64), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
