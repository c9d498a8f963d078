from fastapi import APIRouter
from siteledger.routes import advances, analytics, categories, equity, health, money_sources, transactions

api_router = APIRouter()

api_router.include_router(health.router)
api_router.include_router(transactions.router)
api_router.include_router(money_sources.router)
api_router.include_router(categories.router)
api_router.include_router(advances.router)
api_router.include_router(equity.router)
api_router.include_router(analytics.router)
