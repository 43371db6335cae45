from fastapi import APIRouter

from . import campaigns, health, jobs


def get_api_router() -> APIRouter:
    router = APIRouter()
    router.include_router(health.router)
    router.include_router(campaigns.router)
    router.include_router(jobs.router)
    return router
