from fastapi import APIRouter, Depends

from siteledger.api.deps import REPORT_ROLES, get_equity_service, require_roles
from siteledger.models.user import Actor
from siteledger.schemas.equity import EquityReport
from siteledger.services.equity_service import EquityService

router = APIRouter(prefix="/equity", tags=["equity"])


@router.get("", response_model=EquityReport)
async def get_equity_report(
    actor: Actor = Depends(require_roles(*REPORT_ROLES)),
    service: EquityService = Depends(get_equity_service)
):
    """Partner equity and the transfer that restores an even split."""
    return await service.get_equity_report(actor.company_id)
