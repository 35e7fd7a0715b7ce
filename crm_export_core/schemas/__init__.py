from .billing_schemas import (
    CategoryLine,
    ChargeLedgerEntry,
    ChargeResult,
    DiscountTierView,
    ItemCounts,
    MeterCharge,
    PricingEstimate,
    UnitPrices,
)
from .credential_schemas import CredentialRead, LocationInfo, TokenGrant
from .export_job_schemas import (
    BillingView,
    DispatchMessage,
    ExportFilters,
    ExportRequest,
    JobProgress,
    JobStatusView,
    StartExportResult,
)
from .installation_schemas import InstallWebhook

__all__ = [
    "BillingView",
    "CategoryLine",
    "ChargeLedgerEntry",
    "ChargeResult",
    "CredentialRead",
    "DiscountTierView",
    "DispatchMessage",
    "ExportFilters",
    "ExportRequest",
    "InstallWebhook",
    "ItemCounts",
    "JobProgress",
    "JobStatusView",
    "LocationInfo",
    "MeterCharge",
    "PricingEstimate",
    "StartExportResult",
    "TokenGrant",
    "UnitPrices",
]
