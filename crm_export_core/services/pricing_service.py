"""
Pricing and metering: unit price caching, volume discounts and wallet charges.

All amounts are Decimal cents. Unit prices come from the app's rebilling
configuration and are cached by a PriceCache owned by the engine; fallback
prices are only used when that fetch fails and are never cached.
"""

import threading
import time
from decimal import ROUND_FLOOR, Decimal
from typing import Callable, Dict, List, Optional

from ..clients.crm_client import CRMClient
from ..config import BillingConfig, get_config
from ..constants import ItemCategory
from ..exceptions import (
    AuthenticationFailedError,
    InsufficientFundsError,
    NoCredentialError,
    UpstreamAuthExpiredError,
    UpstreamRequestError,
)
from ..schemas.billing_schemas import (
    CategoryLine,
    ChargeLedgerEntry,
    ChargeResult,
    DiscountTierView,
    ItemCounts,
    MeterCharge,
    PricingEstimate,
    UnitPrices,
)
from ..utils.logger import get_logger
from .call_executor import AuthenticatedCallExecutor

# Errors that end a charge run and are recorded in its ledger
CHARGE_STOPPING_ERRORS = (
    UpstreamRequestError,
    AuthenticationFailedError,
    UpstreamAuthExpiredError,
    NoCredentialError,
)


class PriceCache:
    """
    Time-bounded holder for unit prices with a single-flight refresh.

    Concurrent callers that find the cache empty or expired serialize on a
    lock; only the first performs the fetch, the rest reuse its result.
    """

    def __init__(self, ttl_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._prices: Optional[UnitPrices] = None
        self._expires_at = 0.0

    def get(self) -> Optional[UnitPrices]:
        if self._prices is not None and self._clock() < self._expires_at:
            return self._prices
        return None

    def get_or_fetch(self, fetch: Callable[[], UnitPrices]) -> UnitPrices:
        """Return cached prices, fetching exactly once on a miss or expiry."""
        cached = self.get()
        if cached is not None:
            return cached

        with self._lock:
            cached = self.get()
            if cached is not None:
                return cached
            prices = fetch()
            self._prices = prices
            self._expires_at = self._clock() + self.ttl_seconds
            return prices

    def invalidate(self) -> None:
        with self._lock:
            self._prices = None
            self._expires_at = 0.0


class PricingEngine:
    """Estimates export prices and charges company wallets."""

    def __init__(
        self,
        executor: AuthenticatedCallExecutor,
        client: Optional[CRMClient] = None,
        config: Optional[BillingConfig] = None,
        price_cache: Optional[PriceCache] = None,
        app_id: Optional[str] = None,
    ):
        self.executor = executor
        self.client = client or executor.lifecycle.client
        self.config = config or get_config().billing
        self.price_cache = price_cache or PriceCache(self.config.price_cache_ttl_seconds)
        self.app_id = app_id or get_config().upstream.app_id
        self.logger = get_logger()

        self._category_by_meter = {
            meter_id: ItemCategory(category) for category, meter_id in self.config.meter_ids.items()
        }

    # Prices

    def fallback_prices(self) -> UnitPrices:
        return UnitPrices(
            prices={
                ItemCategory(category): Decimal(str(price))
                for category, price in self.config.fallback_prices_cents.items()
            },
            from_fallback=True,
        )

    def _fetch_prices(self, location_id: str) -> UnitPrices:
        meters = self.executor.execute(
            location_id, lambda token: self.client.get_rebilling_config(token, self.app_id)
        )
        fallback = self.fallback_prices().prices
        prices: Dict[ItemCategory, Decimal] = {}
        for meter in meters:
            category = self._category_by_meter.get(meter.get("meterId"))
            if category is not None and meter.get("centsPrice") is not None:
                prices[category] = Decimal(str(meter["centsPrice"]))

        missing = [c.value for c in ItemCategory if c not in prices]
        if missing:
            self.logger.warning(
                "Rebilling config is missing meters, using fallback prices for them",
                extra={"missing": missing},
            )
        return UnitPrices(prices={c: prices.get(c, fallback[c]) for c in ItemCategory})

    def unit_prices(self, location_id: Optional[str] = None) -> UnitPrices:
        """
        Current unit prices in cents per category.

        Args:
            location_id: Location whose credential is used for the fetch. Without
                one the cache is consulted but never filled.

        Returns:
            Cached or freshly fetched prices, or fallback prices if the fetch failed
        """
        if location_id is None:
            return self.price_cache.get() or self.fallback_prices()

        try:
            return self.price_cache.get_or_fetch(lambda: self._fetch_prices(location_id))
        except UpstreamRequestError as e:
            self.logger.warning(
                "Failed to fetch rebilling config, using fallback prices",
                extra={"location_id": location_id, "error": e.message},
            )
            return self.fallback_prices()

    # Discounts

    def discount_percent(self, total_items: int) -> int:
        tiers = self.config.discount_tiers
        for tier in tiers:
            if total_items >= tier.min_items and (
                tier.max_items is None or total_items < tier.max_items
            ):
                return tier.percent
        return tiers[-1].percent

    def discount_tiers(self) -> List[DiscountTierView]:
        return [
            DiscountTierView(
                range=(
                    f"{tier.min_items}+"
                    if tier.max_items is None
                    else f"{tier.min_items}-{tier.max_items}"
                ),
                discount=tier.percent,
            )
            for tier in self.config.discount_tiers
        ]

    # Estimates

    def estimate(
        self, item_counts: ItemCounts, location_id: Optional[str] = None
    ) -> PricingEstimate:
        """
        Price a set of item counts.

        discount_amount is floor(base_amount * discount_percent / 100) in whole
        cents and final_amount is base_amount - discount_amount.
        """
        prices = self.unit_prices(location_id)

        breakdown: Dict[ItemCategory, CategoryLine] = {}
        for category, count in item_counts.by_category().items():
            unit_price = prices.for_category(category)
            breakdown[category] = CategoryLine(
                count=count, unit_price=unit_price, subtotal=unit_price * count
            )

        base_amount = sum((line.subtotal for line in breakdown.values()), Decimal("0"))
        discount_percent = self.discount_percent(item_counts.total)
        discount_amount = (base_amount * discount_percent / 100).to_integral_value(
            rounding=ROUND_FLOOR
        )

        return PricingEstimate(
            item_counts=item_counts,
            breakdown=breakdown,
            base_amount=base_amount,
            discount_percent=discount_percent,
            discount_amount=discount_amount,
            final_amount=base_amount - discount_amount,
            prices_from_fallback=prices.from_fallback,
        )

    # Charges

    def build_meter_charges(self, item_counts: ItemCounts) -> List[MeterCharge]:
        """One charge per non-zero category."""
        charges = []
        for category, count in item_counts.by_category().items():
            if count > 0:
                charges.append(
                    MeterCharge(
                        meter_id=self.config.meter_ids[category.value],
                        qty=count,
                        description=f"Export {count} {category.value}",
                    )
                )
        return charges

    def has_funds(self, company_id: str, location_id: str) -> bool:
        return self.executor.execute(
            location_id, lambda token: self.client.has_funds(token, company_id)
        )

    def ensure_funds(self, company_id: str, location_id: str) -> None:
        if not self.has_funds(company_id, location_id):
            raise InsufficientFundsError(company_id=company_id, location_id=location_id)

    def charge(
        self, company_id: str, meter_charges: List[MeterCharge], location_id: str
    ) -> ChargeResult:
        """
        Submit one upstream charge per non-zero meter, stopping at the first failure.

        Charges are not transactional across meters. A failure after earlier
        successes leaves those charges billed upstream; the returned ledger
        lists every attempt so the caller can record what was billed.

        Args:
            company_id: Wallet owner
            meter_charges: Charges to submit
            location_id: Location whose credential authorizes the calls

        Returns:
            ChargeResult with one ledger entry per attempted charge
        """
        result = ChargeResult(company_id=company_id)

        for meter_charge in meter_charges:
            if meter_charge.qty <= 0:
                continue

            self.logger.info(
                "Charging wallet",
                extra={
                    "company_id": company_id,
                    "meter_id": meter_charge.meter_id,
                    "qty": meter_charge.qty,
                },
            )
            try:
                charge_id = self.executor.execute(
                    location_id,
                    lambda token, mc=meter_charge: self.client.create_charge(
                        token, company_id, mc.meter_id, mc.qty
                    ),
                )
            except CHARGE_STOPPING_ERRORS as e:
                result.record_failure(meter_charge.meter_id, meter_charge.qty, e)
                break
            except Exception as e:
                # The call may have billed before failing; the caller raises this error
                result.record_failure(
                    meter_charge.meter_id, meter_charge.qty, e, outcome_unknown=True
                )
                break

            result.entries.append(
                ChargeLedgerEntry(
                    meter_id=meter_charge.meter_id,
                    qty=meter_charge.qty,
                    succeeded=True,
                    charge_id=charge_id,
                )
            )

        if result.needs_reconciliation:
            self.logger.error(
                "Wallet charge needs reconciliation; meters may have been billed",
                extra={"company_id": company_id, "charge_ids": result.charge_ids},
            )
        return result
