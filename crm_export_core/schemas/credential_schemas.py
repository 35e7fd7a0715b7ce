"""
Pydantic schemas for OAuth grants and stored credentials.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..constants import CredentialClass
from ..db.db_base import utc_now


class TokenGrant(BaseModel):
    """Token endpoint response: authorization code, refresh or location derivation."""

    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    expires_in: int = Field(..., gt=0, description="Lifetime in seconds")
    user_type: Optional[str] = Field(None, alias="userType")
    company_id: Optional[str] = Field(None, alias="companyId")
    location_id: Optional[str] = Field(None, alias="locationId")
    scope: Optional[str] = None

    @property
    def credential_class(self) -> CredentialClass:
        """Grants bound to a location are location-class, everything else company-wide."""
        if self.location_id or (self.user_type or "").lower() == "location":
            return CredentialClass.LOCATION
        return CredentialClass.COMPANY

    def expires_at(self, now: Optional[datetime] = None) -> datetime:
        return (now or utc_now()) + timedelta(seconds=self.expires_in)


class CredentialRead(BaseModel):
    """Read projection of a stored credential; secrets are never included."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    company_id: Optional[str] = None
    location_id: Optional[str] = None
    credential_class: CredentialClass
    expires_at: datetime
    is_active: bool

    @model_validator(mode="after")
    def check_scope(self) -> "CredentialRead":
        if self.credential_class == CredentialClass.LOCATION and not self.location_id:
            raise ValueError("location credential requires location_id")
        if self.credential_class == CredentialClass.COMPANY and not self.company_id:
            raise ValueError("company credential requires company_id")
        return self


class LocationInfo(BaseModel):
    """A location as listed by the upstream location search endpoint."""

    location_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    timezone: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "LocationInfo":
        return cls(
            location_id=data.get("id") or data["_id"],
            name=data.get("name"),
            email=data.get("email"),
            phone=data.get("phone"),
            timezone=data.get("timezone"),
        )
