"""
Money source - a cash box, bank account or personal advance account.

Balance is never stored here. It is derived from transaction history by the
balance calculator.
"""

from typing import List, Optional

from pydantic import BaseModel

from siteledger.models.base import MongoModel, PyObjectId


class SourceAccess(BaseModel):
    """Access granted on a source to a user who does not own it."""
    user_id: PyObjectId
    can_view: bool = True
    can_spend: bool = False


class MoneySource(MongoModel):
    company_id: PyObjectId
    owner_id: PyObjectId
    name: str
    description: Optional[str] = None

    is_advance: bool = False       # auto-provisioned personal advance account
    is_company_main: bool = False  # visible to every company user
    is_active: bool = True

    shared_with: List[SourceAccess] = []

    def grant_for(self, user_id: str) -> Optional[SourceAccess]:
        for access in self.shared_with:
            if access.user_id == user_id:
                return access
        return None
