from typing import List, Optional

from siteledger.models.base import MongoModel, PyObjectId
from siteledger.models.transaction import TransactionType


# Stable keys of system categories provisioned on demand
ADVANCE_ISSUE_KEY = "advance_issue"
ADVANCE_RETURN_KEY = "advance_return"


class CategoryGroup(MongoModel):
    """Reporting bucket for categories. System groups have no company_id."""
    company_id: Optional[PyObjectId] = None
    name: str
    sort_order: int = 0

    def visible_to(self, company_id: str) -> bool:
        return self.company_id is None or self.company_id == company_id


class Category(MongoModel):
    """Transaction category.

    System categories (company_id is None) are shared by every company.
    """
    company_id: Optional[PyObjectId] = None
    name: str
    allowed_types: List[TransactionType] = []
    group_id: Optional[PyObjectId] = None
    icon: str = ""
    color: str = "#64748b"
    sort_order: int = 0
    is_system: bool = False
    system_key: Optional[str] = None

    def allows(self, tx_type: TransactionType) -> bool:
        return tx_type in self.allowed_types

    def visible_to(self, company_id: str) -> bool:
        return self.company_id is None or self.company_id == company_id
