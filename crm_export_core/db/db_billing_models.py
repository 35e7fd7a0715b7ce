"""
Billing transaction model. All amounts are in cents.
"""

from sqlalchemy import Boolean, CheckConstraint, Column, Index, Integer, Numeric, String, Text

from .db_base import JSON, TimestampMixin, UUIDMixin
from .db_config import Base

CENTS = Numeric(18, 6)


class BillingTransaction(Base, UUIDMixin, TimestampMixin):
    """Priced summary of exportable items for one export attempt."""

    __tablename__ = "billing_transactions"

    location_id = Column(String(100), nullable=False)
    company_id = Column(String(100), nullable=False)
    export_type = Column(String(20), nullable=False)
    user_id = Column(String(100), nullable=True)

    conversations_count = Column(Integer, nullable=False, default=0)
    sms_count = Column(Integer, nullable=False, default=0)
    email_count = Column(Integer, nullable=False, default=0)

    conversations_unit_price = Column(CENTS, nullable=False, default=0)
    sms_unit_price = Column(CENTS, nullable=False, default=0)
    email_unit_price = Column(CENTS, nullable=False, default=0)

    discount_percent = Column(Integer, nullable=False, default=0)
    base_amount = Column(CENTS, nullable=False)
    discount_amount = Column(CENTS, nullable=False, default=0)
    final_amount = Column(CENTS, nullable=False)

    status = Column(String(20), nullable=False)

    # [{meter_id, qty}] requested and [{meter_id, qty, charge_id, succeeded, error}] observed
    meter_charges = Column(JSON, nullable=True)
    charge_ledger = Column(JSON, nullable=True)
    charge_ids = Column(String(1000), nullable=True)
    needs_reconciliation = Column(Boolean, nullable=False, default=False)
    error_message = Column(Text, nullable=True)

    export_job_id = Column(String(36), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'charged', 'failed')", name="ck_billing_transaction_status"
        ),
        Index("ix_billing_transactions_location_created", "location_id", "created_at"),
        Index("ix_billing_transactions_company_status", "company_id", "status"),
    )
