"""
Credential models.

Just the data structure. Token secrets are stored encrypted; see
utils.encryption_utils for how they are written and read.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    String,
    UniqueConstraint,
)

from .db_base import JSON, EncryptedBinary, TimestampMixin, UUIDMixin, utc_now
from .db_config import Base


class Credential(Base, UUIDMixin, TimestampMixin):
    """Delegated authorization grant for a company or a single location."""

    __tablename__ = "credentials"

    company_id = Column(String(100), nullable=True, index=True)
    location_id = Column(String(100), nullable=True, index=True)
    credential_class = Column(String(20), nullable=False)

    # location_id for location-class, company_id for company-class
    scope_key = Column(String(100), nullable=False)

    access_token = Column(EncryptedBinary, nullable=False)
    refresh_token = Column(EncryptedBinary, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    user_type = Column(String(50), nullable=True)
    scopes = Column(String(2000), nullable=True)
    installation_id = Column(String(36), nullable=True)

    __table_args__ = (
        UniqueConstraint("scope_key", "credential_class", name="uq_credential_scope_class"),
        CheckConstraint(
            "credential_class IN ('company', 'location')", name="ck_credential_class"
        ),
        CheckConstraint(
            "credential_class = 'company' OR location_id IS NOT NULL",
            name="ck_location_credential_has_location",
        ),
    )


class ArchivedCredential(Base, UUIDMixin):
    """Immutable copy of a revoked credential, kept for compliance retention."""

    __tablename__ = "archived_credentials"

    original_credential_id = Column(String(36), nullable=False)
    company_id = Column(String(100), nullable=True, index=True)
    location_id = Column(String(100), nullable=True, index=True)
    credential_class = Column(String(20), nullable=False)

    # Copied as stored, still encrypted
    access_token = Column(EncryptedBinary, nullable=False)
    refresh_token = Column(EncryptedBinary, nullable=True)

    original_created_at = Column(DateTime(timezone=True), nullable=True)
    original_expires_at = Column(DateTime(timezone=True), nullable=True)
    archived_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    deletion_reason = Column(String(50), nullable=False)
    installation_id = Column(String(36), nullable=True)
    webhook_data = Column(JSON, nullable=True)
    auto_delete_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_archived_credentials_auto_delete", "auto_delete_at"),)
