"""Service layer for credentials, pricing, export jobs and installations."""

from .call_executor import AuthenticatedCallExecutor
from .credential_lifecycle_service import CredentialLifecycleService
from .credential_store import CredentialStore
from .export_job_service import ExportJobService
from .installation_service import InstallationService
from .notification_service import BrevoEmailNotifier, CompletionNotifier
from .pricing_service import PriceCache, PricingEngine

__all__ = [
    "AuthenticatedCallExecutor",
    "BrevoEmailNotifier",
    "CompletionNotifier",
    "CredentialLifecycleService",
    "CredentialStore",
    "ExportJobService",
    "InstallationService",
    "PriceCache",
    "PricingEngine",
]
