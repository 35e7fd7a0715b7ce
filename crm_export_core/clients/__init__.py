from .crm_client import CRMClient

__all__ = ["CRMClient"]
