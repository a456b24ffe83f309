from fastapi import APIRouter

from catalog_sync.api.routes import catalog, health, jobs, mappings

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["queue"])
api_router.include_router(mappings.router, prefix="/mappings", tags=["admin"])
api_router.include_router(catalog.router, prefix="/catalog", tags=["catalog"])
