from typing import List, Optional

from pydantic import BaseModel, Field

from siteledger.models.category import Category
from siteledger.models.transaction import TransactionType


class CategoryResponse(BaseModel):
    id: str
    name: str
    allowed_types: List[TransactionType]
    group_id: Optional[str] = None
    icon: str
    color: str
    is_system: bool

    @classmethod
    def from_model(cls, category: Category) -> "CategoryResponse":
        return cls(**category.model_dump(by_alias=False, include=set(cls.model_fields)))


class CategoryGroupView(BaseModel):
    id: str
    name: str
    categories: List[CategoryResponse] = []


class CategoryCatalog(BaseModel):
    """Categories a company can use, grouped for pickers and reports."""
    groups: List[CategoryGroupView] = []
    ungrouped: List[CategoryResponse] = []


class CategoryGroupCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    sort_order: int = 0
