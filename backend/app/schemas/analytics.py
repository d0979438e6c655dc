from pydantic import Field

from app.schemas.meta import _CamelModel


class InsightsRequest(_CamelModel):
    project_id: str = Field(min_length=1)
