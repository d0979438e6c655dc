from fastapi import APIRouter
from app.api.v1 import auth, projects, meta, analytics

api_router = APIRouter()

api_router.include_router(auth.router, prefix="/auth", tags=["Authentication"])
api_router.include_router(projects.router, prefix="/projects", tags=["Projects"])
api_router.include_router(meta.router, prefix="/meta", tags=["Meta"])
api_router.include_router(analytics.router, prefix="/analytics", tags=["Analytics"])
