"""Campaign reporting: Graph insights converted to USD and kept as daily logs.

A refresh fetches campaign-level totals plus today's numbers for each ad
set, and stores them as one log entry per date on ``running_campaigns``.
Refreshes within ``CACHE_MINUTES`` of the last entry return that entry
instead of calling Meta again.
"""

import asyncio
import logging
from datetime import datetime, timezone

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.models.analytics import RunningCampaign
from app.models.meta import MetaConnection
from app.models.project import Project
from app.services.currency import ExchangeRateService
from app.services.meta_api import (
    CAMPAIGN_AD_FIELDS,
    RATE_LIMIT_CODE,
    MetaAPIError,
    MetaAPIService,
    format_ad_account_id,
)

logger = logging.getLogger(__name__)

CAMPAIGN_INSIGHT_FIELDS = (
    "impressions,clicks,spend,reach,ctr,cpc,cpm,cpp,actions,action_values,"
    "cost_per_action_type,frequency,unique_clicks"
)
ADSET_INSIGHT_FIELDS = (
    "impressions,reach,clicks,spend,ctr,cpc,cpm,cpp,actions,action_values,unique_clicks,frequency,"
    "cost_per_action_type,unique_actions,video_play_actions,video_avg_time_watched_actions"
)
SUMMARY_INSIGHT_FIELDS = "impressions,clicks,spend,reach,ctr,cpc,cpm,cost_per_action_type"
AD_INSIGHT_FIELDS = "impressions,clicks,spend,reach,ctr,cpc,cpm,actions,cost_per_action_type"
REPORT_INSIGHT_FIELDS = (
    "impressions,reach,clicks,spend,ctr,cpc,cpm,frequency,actions,cost_per_action_type,date_start,date_stop"
)

CACHE_MINUTES = 15
MAX_LOG_DAYS = 30
RESULT_ACTION = "lead"

_LIST_FIELDS = ("actions", "action_values", "cost_per_action_type")
# Only present on ad set rows
_OPTIONAL_LIST_FIELDS = ("unique_actions", "video_play_actions", "video_avg_time_watched_actions")
_COUNT_FIELDS = ("impressions", "reach", "clicks", "unique_clicks", "ctr", "frequency")
_MONEY_FIELDS = ("spend", "cpc", "cpm", "cpp")


class InsightsError(Exception):
    status_code = 400

    def __init__(self, error: str, message: str | None = None, details=None):
        super().__init__(error)
        self.error = error
        self.message = message
        self.details = details

    def to_detail(self) -> dict:
        detail = {"error": self.error}
        if self.message is not None:
            detail["message"] = self.message
        if self.details is not None:
            detail["details"] = self.details
        return detail


class InsightsRateLimited(InsightsError):
    status_code = 429
    retry_after_minutes = 15

    def __init__(self):
        super().__init__(
            "Rate limit reached",
            message="Meta API rate limit exceeded. Please wait 15-30 minutes before refreshing insights.",
        )

    def to_detail(self) -> dict:
        return {
            **super().to_detail(),
            "error_code": RATE_LIMIT_CODE,
            "retry_after_minutes": self.retry_after_minutes,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _number(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def to_usd(value, usd_per_unit: float) -> str:
    """Convert a Graph money string to USD, formatted with two decimals."""
    return f"{_number(value) * usd_per_unit:.2f}"


def summarize_insight(row: dict, currency: str, usd_per_unit: float) -> dict:
    """Normalize one insight row: money in USD, lead results and their cost."""
    summary = {
        "currency": "USD",
        "original_currency": currency,
        "exchange_rate": usd_per_unit,
    }
    for name in _COUNT_FIELDS:
        summary[name] = row.get(name) or "0"
    for name in _MONEY_FIELDS:
        summary[name] = to_usd(row[name], usd_per_unit) if row.get(name) else "0"
    for name in _LIST_FIELDS:
        summary[name] = row.get(name) or []
    for name in _OPTIONAL_LIST_FIELDS:
        if name in row:
            summary[name] = row[name] or []

    lead = next((a for a in row.get("actions") or [] if a.get("action_type") == RESULT_ACTION), None)
    leads = _number(lead.get("value")) if lead else 0.0
    spend = _number(summary["spend"])
    summary["results"] = lead.get("value", "0") if lead else "0"
    summary["cost_per_result"] = f"{spend / leads:.2f}" if leads and row.get("spend") else "0"
    summary["leads_per_dollar"] = f"{leads / spend:.2f}" if lead and spend else "0"
    summary["timestamp"] = _utcnow().isoformat()
    return summary


def merge_daily_log(logs: list | None, entry: dict, keep: int = MAX_LOG_DAYS) -> list:
    """Replace any entry for the same date, append, and keep the newest ``keep``."""
    merged = [e for e in logs or [] if isinstance(e, dict) and e.get("date") != entry["date"]]
    merged.append(entry)
    return merged[-keep:]


def minutes_since(entry: dict, now: datetime | None = None) -> float | None:
    """Age of a log entry in minutes, or None when it carries no usable timestamp."""
    try:
        fetched = datetime.fromisoformat(entry["timestamp"])
    except (KeyError, TypeError, ValueError):
        return None
    if fetched.tzinfo is None:
        fetched = fetched.replace(tzinfo=timezone.utc)
    return ((now or _utcnow()) - fetched).total_seconds() / 60


def summarize_adsets(adsets: dict, total: int) -> dict:
    return {
        "total_adsets": total,
        "total_impressions": int(sum(_number(a.get("impressions")) for a in adsets.values())),
        "total_clicks": int(sum(_number(a.get("clicks")) for a in adsets.values())),
        "total_spend": f"{sum(_number(a.get('spend')) for a in adsets.values()):.2f}",
    }


class InsightsService:
    def __init__(self, meta: MetaAPIService, exchange_rates: ExchangeRateService, request_delay: float | None = None):
        self.meta = meta
        self.exchange_rates = exchange_rates
        if request_delay is None:
            request_delay = get_settings().meta_insights_request_delay
        self.request_delay = request_delay

    # -- Account-wide listings -----------------------------------------------

    async def campaigns_with_ads(self, token: str, ad_account_id: str) -> list[dict]:
        """Every campaign of the account with its ads and lifetime insights."""
        campaigns = await self.meta.list_campaigns(token, ad_account_id)
        enriched = []
        for campaign in campaigns:
            try:
                ads = await self.meta.list_ads(token, campaign["id"], fields=CAMPAIGN_AD_FIELDS)
                rows = await self.meta.get_insights(token, campaign["id"], SUMMARY_INSIGHT_FIELDS)
                enriched.append({**campaign, "ads": ads, "insights": rows[0] if rows else None})
            except (MetaAPIError, httpx.HTTPError) as e:
                logger.warning("Could not load ads or insights for campaign %s: %s", campaign.get("id"), e)
                enriched.append({**campaign, "ads": [], "insights": None})
        logger.info("Loaded %d campaigns for %s", len(enriched), ad_account_id)
        return enriched

    async def ads_with_insights(self, token: str, ad_account_id: str) -> list[dict]:
        """Every ad of the account with its lifetime insights (None when unavailable)."""
        ads = await self.meta.list_ads(token, format_ad_account_id(ad_account_id))
        enriched = []
        for ad in ads:
            try:
                rows = await self.meta.get_insights(token, ad["id"], AD_INSIGHT_FIELDS)
            except (MetaAPIError, httpx.HTTPError) as e:
                logger.warning("Could not load insights for ad %s: %s", ad.get("id"), e)
                rows = []
            enriched.append({**ad, "insights": rows[0] if rows else None})
        return enriched

    # -- Daily project logs --------------------------------------------------

    async def usd_rate_for_campaign(self, token: str, connection: MetaConnection, campaign_id: str) -> tuple[str, float]:
        """The campaign's account currency and the USD value of one unit of it."""
        currency = "USD"
        try:
            data = await self.meta.get_object(token, campaign_id, "account_id")
            account_id = str(data.get("account_id") or "")
            for acc in connection.ad_accounts or []:
                if account_id and (acc.get("account_id") == account_id or acc.get("id") == f"act_{account_id}"):
                    currency = acc.get("currency") or currency
                    break
        except (MetaAPIError, httpx.HTTPError) as e:
            logger.warning("Could not detect currency for campaign %s, using USD: %s", campaign_id, e)

        if currency == "USD":
            return currency, 1.0
        rate = await self.exchange_rates.get_usd_rate(currency)
        return currency, round(1 / rate, 6) if rate else 1.0

    async def collect(self, token: str, connection: MetaConnection, campaign_id: str) -> dict:
        """Build today's log entry for a campaign and its ad sets."""
        today = _utcnow().date().isoformat()
        currency, usd_per_unit = await self.usd_rate_for_campaign(token, connection, campaign_id)

        try:
            rows = await self.meta.get_insights(token, campaign_id, CAMPAIGN_INSIGHT_FIELDS)
        except MetaAPIError as e:
            if e.is_rate_limited:
                logger.error("Rate limit reached while fetching campaign %s insights", campaign_id)
                raise InsightsRateLimited() from e
            logger.warning("Campaign %s insights unavailable: %s", campaign_id, e.log_fields())
            rows = []
        if rows:
            campaign_data = summarize_insight(rows[0], currency, usd_per_unit)
        else:
            campaign_data = {"error": "No campaign data available", "timestamp": _utcnow().isoformat()}

        try:
            adsets = await self.meta.list_adsets(token, campaign_id)
        except MetaAPIError as e:
            if e.is_rate_limited:
                logger.error("Rate limit reached while fetching ad sets of %s", campaign_id)
                raise InsightsRateLimited() from e
            raise InsightsError("Failed to fetch ad sets", details=e.error) from e

        per_adset = {}
        logger.info("Fetching insights for %d ad sets of campaign %s", len(adsets), campaign_id)
        for i, adset in enumerate(adsets):
            if i and self.request_delay:
                await asyncio.sleep(self.request_delay)
            base = {
                "adset_id": adset["id"],
                "adset_name": adset.get("name") or "Unknown",
                "adset_status": adset.get("effective_status") or "UNKNOWN",
                "date": today,
            }
            try:
                rows = await self.meta.get_insights(
                    token, adset["id"], ADSET_INSIGHT_FIELDS,
                    time_range={"since": today, "until": today},
                    time_increment=1,
                )
            except MetaAPIError as e:
                if e.is_rate_limited:
                    logger.error("Rate limit hit on ad set %s, stopping", adset["id"])
                    per_adset[adset["id"]] = {
                        **base,
                        "error": "Rate limit reached - data not available",
                        "error_code": e.code,
                        "timestamp": _utcnow().isoformat(),
                    }
                    break
                per_adset[adset["id"]] = {**base, "error": e.error, "timestamp": _utcnow().isoformat()}
                continue
            except httpx.HTTPError as e:
                logger.error("Error fetching insights for ad set %s: %s", adset["id"], e)
                per_adset[adset["id"]] = {**base, "error": str(e) or "fetch_error", "timestamp": _utcnow().isoformat()}
                continue

            if rows:
                per_adset[adset["id"]] = {**base, **summarize_insight(rows[0], currency, usd_per_unit)}
            else:
                per_adset[adset["id"]] = {**base, "error": "No data available", "timestamp": _utcnow().isoformat()}

        return {
            "date": today,
            "timestamp": _utcnow().isoformat(),
            "campaign_id": campaign_id,
            "campaign_data": campaign_data,
            "adsets": per_adset,
            "summary": summarize_adsets(per_adset, len(adsets)),
        }

    async def refresh_project(
        self, db: AsyncSession, token: str, connection: MetaConnection, project: Project,
    ) -> dict:
        """Return the cached entry when fresh, otherwise fetch and store today's entry."""
        campaign_id = project.meta_campaign_id
        if not campaign_id:
            raise InsightsError("No campaign linked to this project")

        result = await db.execute(
            select(RunningCampaign).where(
                RunningCampaign.user_id == project.user_id,
                RunningCampaign.project_id == project.id,
            )
        )
        running = result.scalar_one_or_none()

        if running and running.logs:
            last = running.logs[-1]
            age = minutes_since(last) if isinstance(last, dict) else None
            if age is not None and age < CACHE_MINUTES:
                logger.info("Using cached insights for project %s (%.1f minutes old)", project.id, age)
                return {
                    "success": True,
                    "cached": True,
                    "project_id": str(project.id),
                    "campaign_id": campaign_id,
                    "logs_saved_for": last.get("date"),
                    "adset_count": len(last.get("adsets") or {}),
                    "logs": last,
                    "message": f"Using cached data from {age:.1f} minutes ago. "
                    f"Refresh after {CACHE_MINUTES} minutes to fetch new data.",
                }

        entry = await self.collect(token, connection, campaign_id)

        if running is None:
            running = RunningCampaign(user_id=project.user_id, project_id=project.id, campaign_id=campaign_id, logs=[])
            db.add(running)
        running.campaign_id = campaign_id
        # Reassign so the JSON column is flagged dirty
        running.logs = merge_daily_log(running.logs, entry)
        running.updated_at = _utcnow()
        await db.flush()

        summary = entry["summary"]
        logger.info(
            "Saved insights for project %s on %s: %d ad sets, %d impressions, $%s spent",
            project.id, entry["date"], summary["total_adsets"], summary["total_impressions"], summary["total_spend"],
        )
        return {
            "success": True,
            "project_id": str(project.id),
            "campaign_id": campaign_id,
            "logs_saved_for": entry["date"],
            "adset_count": summary["total_adsets"],
            "total_logs": len(running.logs),
            "summary": summary,
        }

    async def report(self, token: str, campaign_id: str, date_preset: str = "last_7d") -> list[dict]:
        """Raw insight rows for a campaign over a Graph date preset."""
        return await self.meta.get_insights(token, campaign_id, REPORT_INSIGHT_FIELDS, date_preset=date_preset)
