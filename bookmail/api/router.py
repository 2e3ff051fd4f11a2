from fastapi import APIRouter

from bookmail.api.email import router as email_router
from bookmail.api.logs import router as logs_router
from bookmail.api.scheduler import router as scheduler_router
from bookmail.api.timezones import router as timezones_router

api_router = APIRouter()

# API routes at /api/*
api_router.include_router(scheduler_router, prefix="/api", tags=["scheduler"])
api_router.include_router(logs_router, prefix="/api", tags=["logs"])
api_router.include_router(email_router, prefix="/api", tags=["email"])
api_router.include_router(timezones_router, prefix="/api", tags=["timezones"])
