from fastapi import APIRouter

from chainsignals.api.routes.strategies import router as strategies_router

api_router = APIRouter(prefix="/api")
api_router.include_router(strategies_router, tags=["strategies"])

__all__ = ["api_router"]
