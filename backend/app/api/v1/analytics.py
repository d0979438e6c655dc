"""Campaign analytics: raw Graph insights and daily per-project logs."""

import logging

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.meta import _meta_failure, _require_connection
from app.api.v1.projects import get_owned_project
from app.database import get_db
from app.dependencies import get_current_user, get_insights_service, get_meta_service
from app.models.user import User
from app.schemas.analytics import InsightsRequest
from app.services.insights import InsightsError, InsightsService
from app.services.meta_api import MetaAPIError, MetaAPIService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("")
async def get_campaign_insights(
    campaign_id: str = Query(..., min_length=1),
    date_preset: str = Query("last_7d"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    meta: MetaAPIService = Depends(get_meta_service),
    insights: InsightsService = Depends(get_insights_service),
):
    _, token = await _require_connection(user, db, meta)
    try:
        rows = await insights.report(token, campaign_id, date_preset)
    except MetaAPIError as e:
        raise _meta_failure("Failed to fetch analytics", e)
    return {"data": rows}


@router.post("/insights")
async def refresh_insights(
    body: InsightsRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    meta: MetaAPIService = Depends(get_meta_service),
    insights: InsightsService = Depends(get_insights_service),
):
    """Fetch today's insights for a project's campaign and store them in its daily log.

    Returns the last stored entry instead when it is less than 15 minutes old.
    """
    project = await get_owned_project(body.project_id, user, db)
    if not project.meta_campaign_id:
        raise HTTPException(status_code=400, detail="No campaign linked to this project")
    conn, token = await _require_connection(user, db, meta)

    try:
        return await insights.refresh_project(db, token, conn, project)
    except InsightsError as e:
        logger.warning("Insights refresh for project %s failed: %s", project.id, e.error)
        return JSONResponse(status_code=e.status_code, content=e.to_detail())
    except httpx.HTTPError as e:
        logger.error("Insights refresh for project %s could not reach Meta: %s", project.id, e)
        raise HTTPException(status_code=502, detail="Could not reach Meta to fetch insights")
