"""API routes."""

from fastapi import APIRouter

from vms.api.routes import entities, notifications, recalculation, visits

api_router = APIRouter()

api_router.include_router(entities.router, prefix="/entities", tags=["entities"])
api_router.include_router(visits.router, prefix="/visits", tags=["visits"])
api_router.include_router(recalculation.router, prefix="/recalculation", tags=["recalculation"])
api_router.include_router(notifications.router, prefix="/notifications", tags=["notifications"])
