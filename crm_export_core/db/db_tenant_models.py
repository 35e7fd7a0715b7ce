"""
Tenant hierarchy and install audit models.
"""

from sqlalchemy import Boolean, Column, DateTime, Index, String

from .db_base import JSON, TimestampMixin, UUIDMixin, utc_now
from .db_config import Base


class TenantLocation(Base, UUIDMixin, TimestampMixin):
    """A location (sub-account) and the company that owns it."""

    __tablename__ = "tenant_locations"

    location_id = Column(String(100), nullable=False, unique=True)
    company_id = Column(String(100), nullable=False, index=True)

    name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    timezone = Column(String(64), nullable=True)
    is_installed = Column(Boolean, nullable=False, default=True)


class Installation(Base, UUIDMixin, TimestampMixin):
    """Install/uninstall audit trail."""

    __tablename__ = "installations"

    app_id = Column(String(100), nullable=True)
    company_id = Column(String(100), nullable=True, index=True)
    location_id = Column(String(100), nullable=True, index=True)
    user_id = Column(String(100), nullable=True)
    plan_id = Column(String(100), nullable=True)
    company_name = Column(String(255), nullable=True)
    trial = Column(JSON, nullable=True)

    status = Column(String(20), nullable=False)
    installed_at = Column(DateTime(timezone=True), nullable=True, default=utc_now)
    uninstalled_at = Column(DateTime(timezone=True), nullable=True)
    raw_webhook_data = Column(JSON, nullable=True)

    __table_args__ = (Index("ix_installation_scope", "company_id", "location_id", "status"),)
