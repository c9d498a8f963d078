from fastapi import APIRouter

from siteledger.core.config import settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health():
    return {"status": "ok", "service": settings.PROJECT_NAME, "version": settings.PROJECT_VERSION}
