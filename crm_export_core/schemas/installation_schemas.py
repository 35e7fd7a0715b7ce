"""
Pydantic schemas for marketplace install/uninstall webhooks.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..constants import WebhookEventType


class InstallWebhook(BaseModel):
    """Install or uninstall event as posted by the marketplace."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: WebhookEventType
    app_id: str = Field(..., min_length=1, alias="appId")
    company_id: Optional[str] = Field(None, alias="companyId")
    location_id: Optional[str] = Field(None, alias="locationId")
    user_id: Optional[str] = Field(None, alias="userId")
    plan_id: Optional[str] = Field(None, alias="planId")
    company_name: Optional[str] = Field(None, alias="companyName")
    trial: Optional[Dict[str, Any]] = None
