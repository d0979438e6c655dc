from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    """Accepts both snake_case and the camelCase keys the web client sends."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PublishCampaignRequest(_CamelModel):
    project_id: str
    campaign_name: str = Field(min_length=1)
    ad_account_id: str = Field(min_length=1)
    objective: str = "OUTCOME_TRAFFIC"
    special_ad_categories: list[str] = Field(default_factory=list)


class PublishAdSetsRequest(_CamelModel):
    project_id: str
    campaign_id: str = Field(min_length=1)
    ad_sets: list[dict] = Field(min_length=1)
    ad_account_id: str = Field(min_length=1)
    daily_budget: float = 10


class PublishAdsRequest(_CamelModel):
    project_id: str
    campaign_name: str = Field(min_length=1)
    ad_sets: list[dict] = Field(min_length=1)
    ad_account_id: str = Field(min_length=1)
    page_id: str | None = None
    pixel_id: str | None = None
    daily_budget: float = 10  # USD, converted to the account currency
    objective: str = "OUTCOME_TRAFFIC"
    special_ad_categories: list[str] = Field(default_factory=list)
    website_url: str | None = None


class MetaStatusResponse(BaseModel):
    connected: bool
    accounts_count: int
    accounts: list[dict]
    fb_user_name: str | None = None
    account_currency: str | None = None
