from enum import Enum
from typing import Optional

from pydantic import field_validator

from siteledger.core.timezone import load_zone
from siteledger.models.base import MongoModel


class PlanTier(str, Enum):
    FREE = "FREE"
    PRO = "PRO"
    BUSINESS = "BUSINESS"


class Company(MongoModel):
    """Tenant. Plan limits are enforced by an external collaborator."""
    name: str
    plan: PlanTier = PlanTier.FREE
    timezone: Optional[str] = None  # IANA name; falls back to settings.DEFAULT_TIMEZONE

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            load_zone(v)
        return v
