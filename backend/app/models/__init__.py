from app.models.user import User
from app.models.project import Project
from app.models.meta import MetaConnection, PublishedAd, SubscriptionUsage
from app.models.analytics import RunningCampaign

__all__ = [
    "User",
    "Project",
    # Meta
    "MetaConnection",
    "PublishedAd",
    "SubscriptionUsage",
    # Analytics
    "RunningCampaign",
]
