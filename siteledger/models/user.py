from enum import Enum

from pydantic import BaseModel

from siteledger.models.base import MongoModel, PyObjectId


class Role(str, Enum):
    OWNER = "OWNER"
    PARTNER = "PARTNER"
    ACCOUNTANT = "ACCOUNTANT"
    FOREMAN = "FOREMAN"
    VIEWER = "VIEWER"


# Roles with company-wide access to money sources
MANAGER_ROLES = {Role.OWNER, Role.ACCOUNTANT}

# Roles that hold equity in the company
PARTNER_ROLES = {Role.OWNER, Role.PARTNER}


class User(MongoModel):
    company_id: PyObjectId
    name: str
    email: str
    role: Role = Role.FOREMAN
    is_active: bool = True


class Actor(BaseModel):
    """The authenticated user an operation runs on behalf of."""
    user_id: str
    company_id: str
    role: Role
    name: str = ""

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(user_id=user.id, company_id=user.company_id, role=user.role, name=user.name)

    @property
    def is_manager(self) -> bool:
        return self.role in MANAGER_ROLES
