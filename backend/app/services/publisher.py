"""Publishes a project's campaign, ad sets, creatives, and ads to Meta.

Every step runs sequentially against the Graph API. A failure that happens
before the campaign exists aborts the run with a ``PublishError``; after
that, failures are collected per ad set and reported in the result.
"""

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.meta import MetaConnection, PublishedAd, SubscriptionUsage
from app.models.project import Project
from app.schemas.meta import PublishAdSetsRequest, PublishAdsRequest, PublishCampaignRequest
from app.services import targeting
from app.services.currency import ExchangeRateService, get_minimum_budget
from app.services.meta_api import (
    ImageUploadError,
    MetaAPIError,
    MetaAPIService,
    format_ad_account_id,
)

logger = logging.getLogger(__name__)

DEFAULT_CREATIVE_LINK = "https://www.example.com"

PAYMENT_METHOD_WARNING = (
    "Ad creation skipped: Payment method required. Campaign, Ad Set, and Creative are ready. "
    "Add a payment method in Facebook Ads Manager to create the ad."
)


class PublishError(Exception):
    """A publish run was rejected before any ad set was attempted."""

    status_code = 400

    def __init__(self, error: str, message: str | None = None, details=None, meta_error: dict | None = None):
        super().__init__(error)
        self.error = error
        self.message = message
        self.details = details
        self.meta_error = meta_error

    def to_detail(self) -> dict:
        detail = {"error": self.error}
        if self.message is not None:
            detail["message"] = self.message
        if self.details is not None:
            detail["details"] = self.details
        if self.meta_error is not None:
            detail["meta_error"] = self.meta_error
        return detail


class PageRequiredError(PublishError):
    pass


class PageLookupError(PublishError):
    pass


class CampaignCreationError(PublishError):
    pass


def parse_thumbnails(value) -> dict[str, str]:
    """Normalize ``adset_thumbnail_image`` into ``{ad_set_id | "default": url}``."""
    if not value:
        return {}
    parsed = value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return {"default": value}
    if isinstance(parsed, dict):
        return {str(k): v for k, v in parsed.items() if v}
    if isinstance(parsed, str) and parsed:
        return {"default": parsed}
    return {}


def parse_campaign_proposal(value) -> dict:
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value:
        try:
            parsed = json.loads(value)
        except ValueError:
            logger.warning("campaign_proposal is not valid JSON, ignoring it")
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def pick_thumbnail(thumbnails: dict[str, str], ad_set_id) -> str | None:
    if ad_set_id is not None and thumbnails.get(str(ad_set_id)):
        return thumbnails[str(ad_set_id)]
    if thumbnails.get("default"):
        return thumbnails["default"]
    return next(iter(thumbnails.values()), None)


def _error_entry(ad_set_title, error: str, exc: MetaAPIError | None = None, details=None) -> dict:
    entry = {"ad_set_title": ad_set_title, "error": error, "details": details}
    if exc is not None:
        entry.update(
            details=exc.error,
            error_type=exc.user_title or "Unknown",
            error_subcode=exc.error_subcode,
            error_code=exc.code,
            error_message=exc.user_message or exc.message,
            fbtrace_id=exc.fbtrace_id,
        )
    return entry


@dataclass
class _RunContext:
    token: str
    ad_account_id: str
    campaign_id: str
    campaign_name: str
    page_id: str
    pixel_id: str | None
    goal: str | None
    end_time: str | None
    currency: str
    rate: float
    default_budget: float
    website_url: str | None
    thumbnails: dict[str, str]
    image_hashes: dict[str, str] = field(default_factory=dict)


class AdPublisher:
    def __init__(self, meta: MetaAPIService, exchange_rates: ExchangeRateService):
        self.meta = meta
        self.exchange_rates = exchange_rates

    # -- Lookups -------------------------------------------------------------

    async def resolve_account_currency(self, token: str, connection: MetaConnection, ad_account_id: str) -> str:
        """Currency from the stored ad accounts, then the Graph API, else USD."""
        act = format_ad_account_id(ad_account_id)
        bare = act.removeprefix("act_")
        for acc in connection.ad_accounts or []:
            if acc.get("id") == act or acc.get("account_id") == bare:
                if acc.get("currency"):
                    return acc["currency"]
                break

        try:
            data = await self.meta.get_ad_account(token, act, fields="currency")
            if data.get("currency"):
                return data["currency"]
        except (MetaAPIError, httpx.HTTPError) as e:
            logger.warning("Could not fetch currency for %s: %s", act, e)
        return "USD"

    async def resolve_page(self, token: str, ad_account_id: str, page_id: str | None) -> str:
        if page_id:
            return page_id
        try:
            pages = await self.meta.list_pages(token, ad_account_id)
        except httpx.HTTPError as e:
            raise PageLookupError(
                "Failed to fetch Facebook pages",
                message="Could not retrieve Facebook pages. Please ensure you have a Facebook Page connected to your account.",
                details=str(e),
            )
        if not pages:
            raise PageRequiredError(
                "Facebook Page is required",
                message="To create link ads, you need to connect a Facebook Page to your account. "
                "Please create or connect a Facebook Page and try again.",
                details="Link ads require a page_id. Please ensure you have a Facebook Page associated with your account.",
            )
        logger.info("Using discovered page %s", pages[0]["page_id"])
        return pages[0]["page_id"]

    # -- Single campaign -----------------------------------------------------

    async def publish_campaign(self, db: AsyncSession, token: str, project: Project, req: PublishCampaignRequest) -> dict:
        """Create one PAUSED campaign and remember it on the project."""
        logger.info("Creating campaign %r on %s", req.campaign_name, req.ad_account_id)
        try:
            data = await self.meta.create_campaign(token, req.ad_account_id, {
                "name": req.campaign_name,
                "objective": req.objective,
                "status": "PAUSED",
                "special_ad_categories": req.special_ad_categories,
            })
        except MetaAPIError as e:
            logger.error("Campaign creation failed: %s", e.log_fields())
            raise CampaignCreationError("Failed to create Meta campaign", details=e.message, meta_error=e.error)

        campaign_id = data.get("id")
        project.meta_campaign_id = campaign_id
        project.meta_campaign_name = req.campaign_name
        await db.flush()
        logger.info("Campaign %s created for project %s", campaign_id, project.id)

        return {
            "success": True,
            "campaign": {
                "id": campaign_id,
                "name": req.campaign_name,
                "objective": req.objective,
                "status": "PAUSED",
            },
        }

    # -- Ad sets under an existing campaign ----------------------------------

    async def publish_adsets(self, db: AsyncSession, user_id, token: str, project: Project, req: PublishAdSetsRequest) -> dict:
        """Create PAUSED ad sets under an existing campaign.

        Budgets are taken as whole account-currency units; no conversion,
        minimum clamp or Advantage+ audience is applied here.
        """
        act = format_ad_account_id(req.ad_account_id)
        created, errors = [], []

        for index, ad_set in enumerate(req.ad_sets):
            title = ad_set.get("ad_set_title")
            try:
                budget_cents = targeting.to_minor_units(ad_set.get("daily_budget") or req.daily_budget)
                data = await self.meta.create_adset(token, act, {
                    "name": title or f"Ad Set {index + 1}",
                    "campaign_id": req.campaign_id,
                    "daily_budget": budget_cents,
                    "billing_event": "IMPRESSIONS",
                    "optimization_goal": "LINK_CLICKS",
                    "bid_strategy": "LOWEST_COST_WITHOUT_CAP",
                    "targeting": targeting.build_targeting(ad_set, advantage_audience=False),
                    "status": "PAUSED",
                })
            except MetaAPIError as e:
                logger.error("Ad set %d creation failed: %s", index + 1, e.log_fields())
                errors.append({"ad_set_title": title, "error": e.message, "details": e.error})
                continue
            except Exception as e:
                logger.exception("Error creating ad set %d", index + 1)
                errors.append({"ad_set_title": title, "error": str(e)})
                continue

            logger.info("Ad set %d created: %s", index + 1, data.get("id"))
            created.append({
                "id": data.get("id"),
                "name": title,
                "daily_budget": budget_cents / 100,
                "status": "PAUSED",
            })

        for entry in created:
            db.add(PublishedAd(
                user_id=user_id,
                project_id=project.id,
                campaign_name=req.campaign_id,
                ad_set_id=entry["id"],
                ad_account_id=act,
                daily_budget=Decimal(str(entry["daily_budget"])),
                status="published",
                extra={"ad_set_name": entry["name"]},
            ))
        if created:
            await self._bump_usage(db, user_id, ads=len(created))
        await db.flush()

        result = {
            "success": bool(created),
            "created_ad_sets": created,
            "total_requested": len(req.ad_sets),
            "total_created": len(created),
            "total_failed": len(errors),
        }
        if errors:
            result["errors"] = errors
            result["message"] = (
                f"Created {len(created)} out of {len(req.ad_sets)} ad sets. {len(errors)} failed."
            )
        else:
            result["message"] = f"Successfully created {len(created)} ad sets"
        return result

    # -- Full publish ----------------------------------------------------------

    async def publish_ads(
        self,
        db: AsyncSession,
        user_id,
        token: str,
        connection: MetaConnection,
        project: Project,
        req: PublishAdsRequest,
    ) -> dict:
        """Publish campaign, ad sets, creatives, and ads for a project."""
        act = format_ad_account_id(req.ad_account_id)
        thumbnails = parse_thumbnails(project.adset_thumbnail_image)
        proposal = parse_campaign_proposal(project.campaign_proposal)
        logger.info(
            "Publishing project %s: %d ad set(s), %d thumbnail(s), daily budget $%.2f USD",
            project.id, len(req.ad_sets), len(thumbnails), req.daily_budget,
        )

        currency = await self.resolve_account_currency(token, connection, act)
        rate = await self.exchange_rates.get_usd_rate(currency)
        logger.info(
            "Account %s currency %s, minimum daily budget %s, 1 USD = %s %s",
            act, currency, get_minimum_budget(currency), rate, currency,
        )

        page_id = await self.resolve_page(token, act, req.page_id)

        end_time = None
        try:
            end_time = targeting.normalize_end_time(proposal.get("end_date"))
        except ValueError:
            logger.warning("Ignoring unparsable end_date %r", proposal.get("end_date"))

        logger.info("Creating campaign %r (%s) on %s", req.campaign_name, req.objective, act)
        try:
            campaign = await self.meta.create_campaign(token, act, {
                "name": req.campaign_name,
                "objective": req.objective,
                "status": "ACTIVE",
                "special_ad_categories": req.special_ad_categories,
                "is_adset_budget_sharing_enabled": False,
            })
        except MetaAPIError as e:
            logger.error("Campaign creation failed: %s", e.log_fields())
            raise CampaignCreationError("Failed to create Meta campaign", details=e.message, meta_error=e.error)
        campaign_id = campaign.get("id")
        logger.info("Campaign created: %s", campaign_id)

        ctx = _RunContext(
            token=token,
            ad_account_id=act,
            campaign_id=campaign_id,
            campaign_name=req.campaign_name,
            page_id=page_id,
            pixel_id=req.pixel_id,
            goal=targeting.resolve_goal(proposal.get("ad_goal"), req.objective),
            end_time=end_time,
            currency=currency,
            rate=rate,
            default_budget=req.daily_budget,
            website_url=req.website_url,
            thumbnails=thumbnails,
        )

        created, errors = [], []
        for index, ad_set in enumerate(req.ad_sets):
            try:
                entry, error = await self._publish_ad_set(ctx, index, ad_set)
            except Exception as e:
                logger.exception("Unexpected error processing ad set %r", ad_set.get("ad_set_title"))
                entry, error = None, {
                    "ad_set_title": ad_set.get("ad_set_title"),
                    "error": str(e),
                    "error_type": "UnexpectedError",
                    "details": {"message": str(e)},
                }
            if entry:
                created.append(entry)
            if error:
                errors.append(error)

        await self._record_publish(db, user_id, project, act, campaign_id, req.campaign_name, created)

        ads_created = sum(1 for a in created if a.get("ad_id"))
        result = {
            "success": bool(created),
            "campaign": {"id": campaign_id, "name": req.campaign_name, "status": "ACTIVE"},
            "ad_sets": created,
            "total_requested": len(req.ad_sets),
            "total_created": len(created),
            "total_failed": len(errors),
            "ads_created": ads_created,
            "ads_not_created": len(created) - ads_created,
        }
        needs_payment = [a for a in created if a.get("requires_payment_method")]
        if errors:
            result["errors"] = errors
            result["message"] = (
                f"Campaign created with {len(created)} out of {len(req.ad_sets)} ad sets. "
                f"{len(errors)} failed."
            )
        elif needs_payment:
            result["message"] = (
                "Campaign, Ad Sets, and Creatives created successfully! Note: Ads require a payment method. "
                "Add a payment method in Facebook Ads Manager, then create the ads manually or they will be "
                "created automatically when you activate the ad sets."
            )
            result["warnings"] = [
                {"ad_set_name": a["name"], "message": a["warning"]} for a in needs_payment
            ]
        else:
            result["message"] = (
                f"Successfully created campaign with {len(created)} ad set(s). "
                f"{ads_created} ad(s) created. All ad sets are ACTIVE."
            )

        logger.info(
            "Publish summary for campaign %s: requested=%d created=%d ads=%d failed=%d",
            campaign_id, len(req.ad_sets), len(created), ads_created, len(errors),
        )
        return result

    async def _publish_ad_set(self, ctx: _RunContext, index: int, ad_set: dict) -> tuple[dict | None, dict | None]:
        """Ad set, image, creative, and ad for one proposal: (created, error)."""
        title = ad_set.get("ad_set_title")
        budget = targeting.normalize_budget(ad_set.get("daily_budget") or ctx.default_budget, ctx.rate, ctx.currency)
        if budget.clamped:
            logger.info(
                "Ad set %d budget below the %s minimum, raised to %.2f",
                index + 1, ctx.currency, budget.converted,
            )
        logger.info(
            "Ad set %d (%r): $%.2f USD -> %.2f %s = %d minor units",
            index + 1, title, budget.usd, budget.converted, ctx.currency, budget.minor_units,
        )

        payload = {
            "name": title or f"Ad Set {index + 1}",
            "campaign_id": ctx.campaign_id,
            "daily_budget": budget.minor_units,
            "billing_event": "IMPRESSIONS",
            "optimization_goal": targeting.optimization_goal(ctx.goal),
            "bid_strategy": "LOWEST_COST_WITHOUT_CAP",
            "targeting": targeting.build_targeting(ad_set),
            "status": "ACTIVE",
        }
        if ctx.end_time:
            payload["end_time"] = ctx.end_time
        promoted = targeting.build_promoted_object(ctx.goal, ctx.pixel_id, ctx.page_id)
        if promoted:
            payload["promoted_object"] = promoted

        try:
            adset_id = (await self.meta.create_adset(ctx.token, ctx.ad_account_id, payload)).get("id")
        except MetaAPIError as e:
            logger.error("Ad set creation failed for %r: %s", title, e.log_fields())
            return None, _error_entry(title, e.message, e)
        logger.info("Ad set created for %r: %s", title, adset_id)

        image_url = pick_thumbnail(ctx.thumbnails, ad_set.get("ad_set_id"))
        if not image_url:
            return None, _error_entry(
                title,
                "No thumbnail image found for this ad set",
                details="Please set a thumbnail image for this ad set",
            )

        image_hash = ctx.image_hashes.get(image_url)
        if not image_hash:
            try:
                image_hash = await self.meta.upload_image(ctx.token, ctx.ad_account_id, image_url)
            except (ImageUploadError, httpx.HTTPError) as e:
                logger.error("Thumbnail upload failed for %r: %s", title, e)
                return None, _error_entry(title, f"Failed to upload thumbnail image: {e}", details=str(e))
            ctx.image_hashes[image_url] = image_hash

        headline = ad_set.get("ad_copywriting_title") or ctx.campaign_name
        try:
            creative = await self.meta.create_ad_creative(ctx.token, ctx.ad_account_id, {
                "name": f"{title} - Creative",
                "object_story_spec": {
                    "page_id": ctx.page_id,
                    "link_data": {
                        "link": ctx.website_url or DEFAULT_CREATIVE_LINK,
                        "message": ad_set.get("ad_copywriting_body") or headline,
                        "name": headline,
                        "description": ad_set.get("audience_description") or "",
                        "call_to_action": {"type": "LEARN_MORE"},
                        "image_hash": image_hash,
                    },
                },
            })
        except MetaAPIError as e:
            logger.error("Creative creation failed for %r: %s", title, e.log_fields())
            return None, _error_entry(title, f"Creative creation failed: {e.message}", e)
        creative_id = creative.get("id")
        logger.info("Creative created for %r: %s", title, creative_id)
        if creative_id:
            await self._verify_creative(ctx.token, creative_id, title)

        ad_payload = {
            "name": f"{title} - Ad",
            "adset_id": adset_id,
            "creative": {"creative_id": creative_id},
        }
        activated_on_create = False
        try:
            ad = await self.meta.create_ad(ctx.token, ctx.ad_account_id, ad_payload)
        except MetaAPIError as first:
            logger.warning("Ad creation without status failed for %r (%s), retrying with ACTIVE", title, first.message)
            try:
                ad = await self.meta.create_ad(ctx.token, ctx.ad_account_id, {**ad_payload, "status": "ACTIVE"})
                activated_on_create = True
            except MetaAPIError as e:
                logger.error("Ad creation failed for %r: %s", title, e.log_fields())
                if targeting.is_payment_method_error(e.error):
                    logger.info("Payment method missing for %r, reporting as warning", title)
                    return {
                        "id": adset_id,
                        "name": title,
                        "daily_budget": budget.converted,
                        "status": "PAUSED",
                        "creative_id": creative_id,
                        "ad_id": None,
                        "warning": PAYMENT_METHOD_WARNING,
                        "requires_payment_method": True,
                    }, None
                return None, _error_entry(title, f"Ad creation failed: {e.message}", e)

        ad_id = ad.get("id")
        if ad_id and not activated_on_create:
            try:
                await self.meta.update_status(ctx.token, ad_id, "ACTIVE")
                logger.info("Ad %s set to ACTIVE", ad_id)
            except (MetaAPIError, httpx.HTTPError) as e:
                logger.warning("Failed to activate ad %s for %r: %s", ad_id, title, e)

        logger.info("Ad created for %r: %s", title, ad_id)
        return {
            "id": adset_id,
            "name": title,
            "daily_budget": budget.converted,
            "status": "ACTIVE",
            "creative_id": creative_id,
            "ad_id": ad_id,
        }, None

    async def _verify_creative(self, token: str, creative_id: str, title) -> None:
        try:
            await self.meta.get_object(token, creative_id, "object_story_spec")
            logger.info("Creative verified for %r", title)
        except (MetaAPIError, httpx.HTTPError) as e:
            logger.warning("Creative verification failed for %r: %s", title, e)

    # -- Persistence -------------------------------------------------------------

    async def _record_publish(self, db: AsyncSession, user_id, project: Project, act: str, campaign_id: str, campaign_name: str, created: list[dict]) -> None:
        project.meta_campaign_id = campaign_id
        project.meta_campaign_name = campaign_name
        if created:
            project.status = "RUNNING"

        for entry in created:
            db.add(PublishedAd(
                user_id=user_id,
                project_id=project.id,
                campaign_name=campaign_name,
                ad_set_id=entry["id"],
                ad_account_id=act,
                daily_budget=Decimal(str(round(entry["daily_budget"], 2))),
                status="published",
                extra={"ad_set_name": entry["name"], "campaign_id": campaign_id},
            ))
        if created:
            await self._bump_usage(db, user_id, ads=len(created), campaigns=1)
        await db.flush()

    async def _bump_usage(self, db: AsyncSession, user_id, ads: int = 0, campaigns: int = 0) -> None:
        result = await db.execute(select(SubscriptionUsage).where(SubscriptionUsage.user_id == user_id))
        usage = result.scalar_one_or_none()
        if not usage:
            usage = SubscriptionUsage(user_id=user_id, ads_published_count=0, campaigns_count=0)
            db.add(usage)
        usage.ads_published_count = (usage.ads_published_count or 0) + ads
        usage.campaigns_count = (usage.campaigns_count or 0) + campaigns
