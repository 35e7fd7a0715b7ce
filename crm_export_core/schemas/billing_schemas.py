"""
Pydantic schemas for pricing estimates and wallet charges.

Money is carried as Decimal cents end to end; nothing here is rounded except
the discount amount, which is floored to whole cents.
"""

from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, computed_field

from ..constants import ItemCategory


class ItemCounts(BaseModel):
    """Billable item counts per category."""

    conversations: int = Field(default=0, ge=0)
    sms_messages: int = Field(default=0, ge=0)
    email_messages: int = Field(default=0, ge=0)

    @computed_field
    @property
    def total(self) -> int:
        return self.conversations + self.sms_messages + self.email_messages

    def by_category(self) -> Dict[ItemCategory, int]:
        return {
            ItemCategory.CONVERSATIONS: self.conversations,
            ItemCategory.SMS_WHATSAPP: self.sms_messages,
            ItemCategory.EMAIL: self.email_messages,
        }


class UnitPrices(BaseModel):
    """Unit price in cents per item category."""

    model_config = ConfigDict(frozen=True)

    prices: Dict[ItemCategory, Decimal]
    from_fallback: bool = False

    def for_category(self, category: ItemCategory) -> Decimal:
        return self.prices[category]


class CategoryLine(BaseModel):
    count: int
    unit_price: Decimal
    subtotal: Decimal


class PricingEstimate(BaseModel):
    """Priced summary of an export, before any charge is made."""

    item_counts: ItemCounts
    breakdown: Dict[ItemCategory, CategoryLine]
    base_amount: Decimal
    discount_percent: int
    discount_amount: Decimal
    final_amount: Decimal
    prices_from_fallback: bool = False

    @computed_field
    @property
    def final_amount_dollars(self) -> str:
        return f"{self.final_amount / 100:.2f}"


class MeterCharge(BaseModel):
    """One metered charge request."""

    meter_id: str
    qty: int = Field(..., ge=0)
    description: Optional[str] = None


class ChargeLedgerEntry(BaseModel):
    """Outcome of a single upstream charge call."""

    meter_id: str
    qty: int
    succeeded: bool
    charge_id: Optional[str] = None
    error: Optional[str] = None
    # The call failed in a way that does not tell whether it billed
    outcome_unknown: bool = False


class ChargeResult(BaseModel):
    """
    Outcome of charging a set of meters.

    Charges are submitted one by one and stop at the first failure, so a
    failed result can still contain succeeded entries that were billed.
    """

    company_id: str
    entries: List[ChargeLedgerEntry] = Field(default_factory=list)

    # Exception that stopped the charge run, kept for the caller to re-raise
    _error: Optional[Exception] = PrivateAttr(default=None)

    @property
    def error(self) -> Optional[Exception]:
        return self._error

    def record_failure(
        self, meter_id: str, qty: int, error: Exception, outcome_unknown: bool = False
    ) -> None:
        self.entries.append(
            ChargeLedgerEntry(
                meter_id=meter_id,
                qty=qty,
                succeeded=False,
                error=str(error),
                outcome_unknown=outcome_unknown,
            )
        )
        self._error = error

    @property
    def succeeded(self) -> bool:
        return all(entry.succeeded for entry in self.entries)

    @property
    def charge_ids(self) -> List[str]:
        return [e.charge_id for e in self.entries if e.succeeded and e.charge_id]

    @property
    def failed_entry(self) -> Optional[ChargeLedgerEntry]:
        return next((e for e in self.entries if not e.succeeded), None)

    @property
    def is_partial(self) -> bool:
        """Some categories were billed but not all."""
        return not self.succeeded and any(e.succeeded for e in self.entries)

    @property
    def needs_reconciliation(self) -> bool:
        """Money may have moved upstream without a completed charge run."""
        return self.is_partial or any(e.outcome_unknown for e in self.entries)


class DiscountTierView(BaseModel):
    """Display projection of one discount tier."""

    range: str
    discount: int
