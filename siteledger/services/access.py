"""
Money source access rules.

OWNER and ACCOUNTANT see and spend on every source of their company.
Everybody else gets full rights on sources they own, whatever `shared_with`
grants on the rest, and view rights on the company main source.
"""

from dataclasses import dataclass

from siteledger.core.errors import ForbiddenError, NotFoundError
from siteledger.models.money_source import MoneySource
from siteledger.models.user import Actor


@dataclass(frozen=True)
class Access:
    can_view: bool = False
    can_spend: bool = False


NO_ACCESS = Access()
FULL_ACCESS = Access(can_view=True, can_spend=True)


def check_money_source_access(actor: Actor, source: MoneySource) -> Access:
    if source.company_id != actor.company_id:
        return NO_ACCESS
    if actor.is_manager or source.owner_id == actor.user_id:
        return FULL_ACCESS

    grant = source.grant_for(actor.user_id)
    can_view = source.is_company_main or (grant is not None and grant.can_view)
    can_spend = grant is not None and grant.can_spend
    # Spending implies seeing
    return Access(can_view=can_view or can_spend, can_spend=can_spend)


def require_view(actor: Actor, source: MoneySource) -> None:
    if source.company_id != actor.company_id:
        raise NotFoundError("Money source not found")
    if not check_money_source_access(actor, source).can_view:
        raise ForbiddenError("No access to this money source")


def require_spend(actor: Actor, source: MoneySource) -> None:
    if source.company_id != actor.company_id:
        raise NotFoundError("Money source not found")
    if not check_money_source_access(actor, source).can_spend:
        raise ForbiddenError("No spend rights on this money source")
