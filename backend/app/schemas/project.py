from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class ProjectCreateRequest(BaseModel):
    url: str = Field(min_length=1, max_length=2048)


class ProjectCreateResponse(BaseModel):
    id: UUID


class ProjectUpdateRequest(BaseModel):
    url_analysis: dict | None = None
    analysing_points: Any = None
    ad_set_proposals: list | None = None
    campaign_proposal: dict | None = None
    adset_thumbnail_image: dict | str | None = None
    ai_images: Any = None


class CampaignDetailsRequest(BaseModel):
    start_date: str | None = None
    end_date: str | None = None
    ad_goal: str | None = None
    cta_button_text: str | None = None
    business_summary: str | None = None


class ThumbnailRequest(BaseModel):
    image_url: str = Field(min_length=1)
    ad_set_id: str | None = None  # omit to set the default thumbnail


class ProjectResponse(BaseModel):
    id: UUID
    status: str
    url_analysis: dict | None
    analysing_points: Any
    ad_set_proposals: list | None
    campaign_proposal: dict | None
    adset_thumbnail_image: dict | str | None
    ai_images: Any
    meta_campaign_id: str | None
    meta_campaign_name: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
