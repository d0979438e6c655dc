"""Projects: a website URL plus the analysis and proposal blobs built for it."""

import logging
import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import get_current_user
from app.models.project import Project
from app.models.user import User
from app.schemas.project import (
    CampaignDetailsRequest,
    ProjectCreateRequest,
    ProjectCreateResponse,
    ProjectResponse,
    ProjectUpdateRequest,
    ThumbnailRequest,
)
from app.services.publisher import parse_campaign_proposal, parse_thumbnails

logger = logging.getLogger(__name__)
router = APIRouter()


async def get_owned_project(project_id: str, user: User, db: AsyncSession) -> Project:
    """Load a project owned by ``user``; 400 for a malformed id, 404 otherwise."""
    try:
        pid = uuid.UUID(project_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid project ID format")

    result = await db.execute(
        select(Project).where(Project.id == pid, Project.user_id == user.id)
    )
    project = result.scalar_one_or_none()
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


@router.post("", response_model=ProjectCreateResponse, status_code=201)
async def create_project(
    data: ProjectCreateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    project = Project(
        user_id=user.id,
        status="PENDING",
        url_analysis={"website_url": data.url},
        ad_set_proposals=[],
    )
    db.add(project)
    await db.flush()
    logger.info("Project %s created for %s", project.id, data.url)
    return {"id": project.id}


@router.get("", response_model=list[ProjectResponse])
async def list_projects(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Project)
        .where(Project.user_id == user.id)
        .order_by(Project.created_at.desc())
    )
    return result.scalars().all()


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await get_owned_project(project_id, user, db)


@router.patch("/{project_id}", response_model=ProjectResponse)
async def update_project(
    project_id: str,
    data: ProjectUpdateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    project = await get_owned_project(project_id, user, db)
    for key, value in data.model_dump(exclude_unset=True).items():
        setattr(project, key, value)
    await db.flush()
    await db.refresh(project)
    return project


@router.post("/{project_id}/campaign-details", response_model=ProjectResponse)
async def save_campaign_details(
    project_id: str,
    data: CampaignDetailsRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Merge the confirmed campaign details into ``campaign_proposal``."""
    project = await get_owned_project(project_id, user, db)
    proposal = dict(parse_campaign_proposal(project.campaign_proposal))
    proposal.update(data.model_dump(exclude_unset=True))
    proposal["updated_at"] = datetime.now(timezone.utc).isoformat()
    # Reassign so the JSON column is marked dirty
    project.campaign_proposal = proposal
    await db.flush()
    await db.refresh(project)
    return project


# ---------------------------------------------------------------------------
# Ad set thumbnails
# ---------------------------------------------------------------------------

@router.get("/{project_id}/adset-thumbnail")
async def get_adset_thumbnails(
    project_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    project = await get_owned_project(project_id, user, db)
    return {"thumbnails": parse_thumbnails(project.adset_thumbnail_image)}


@router.post("/{project_id}/adset-thumbnail")
async def set_adset_thumbnail(
    project_id: str,
    data: ThumbnailRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Set the default thumbnail, or the one for a single ad set."""
    project = await get_owned_project(project_id, user, db)
    thumbnails = dict(parse_thumbnails(project.adset_thumbnail_image))
    thumbnails[data.ad_set_id or "default"] = data.image_url
    project.adset_thumbnail_image = thumbnails
    await db.flush()
    return {"success": True, "thumbnails": thumbnails}
