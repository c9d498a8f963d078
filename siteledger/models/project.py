from enum import Enum
from typing import Optional

from siteledger.models.base import MongoModel, PyObjectId


class ProjectStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    ARCHIVED = "ARCHIVED"


class Project(MongoModel):
    company_id: PyObjectId
    name: str
    status: ProjectStatus = ProjectStatus.ACTIVE
    budget_cents: Optional[int] = None
