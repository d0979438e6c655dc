"""Meta integration: OAuth connection, account discovery, and publishing."""

import logging
import uuid
from urllib.parse import urlencode

import httpx
from cryptography.fernet import InvalidToken
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse, RedirectResponse
from kombu.exceptions import OperationalError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.projects import get_owned_project
from app.config import get_settings
from app.database import get_db
from app.dependencies import get_current_user, get_insights_service, get_meta_service, get_publisher
from app.models.meta import MetaConnection
from app.models.user import User
from app.schemas.meta import (
    MetaStatusResponse,
    PublishAdSetsRequest,
    PublishAdsRequest,
    PublishCampaignRequest,
)
from app.services.insights import InsightsService
from app.services.meta_api import MetaAPIError, MetaAPIService
from app.services.publisher import AdPublisher, PublishError
from app.utils.security import OAUTH_STATE_TYPE, create_oauth_state, decode_token

logger = logging.getLogger(__name__)
router = APIRouter()

NOT_CONNECTED = "Meta account not connected. Please connect your Meta account first."


async def _get_connection(user: User, db: AsyncSession) -> MetaConnection | None:
    result = await db.execute(select(MetaConnection).where(MetaConnection.user_id == user.id))
    return result.scalar_one_or_none()


async def _require_connection(user: User, db: AsyncSession, meta: MetaAPIService) -> tuple[MetaConnection, str]:
    """Return the active connection and its decrypted access token."""
    conn = await _get_connection(user, db)
    if not conn or not conn.is_active or not conn.access_token_encrypted:
        raise HTTPException(status_code=400, detail=NOT_CONNECTED)
    try:
        token = meta.decrypt_token(conn.access_token_encrypted)
    except InvalidToken:
        logger.error("Stored Meta token for user %s cannot be decrypted", user.id)
        raise HTTPException(status_code=400, detail="Meta access token not found")
    return conn, token


def _meta_failure(error: str, e: MetaAPIError) -> HTTPException:
    logger.error("%s: %s", error, e.log_fields())
    return HTTPException(
        status_code=400,
        detail={"error": error, "details": e.message, "meta_error": e.error},
    )


def _publish_failure(e: PublishError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_detail())


def _safe_return_url(return_url: str | None) -> str | None:
    """Only redirect back into our own frontend."""
    if not return_url:
        return None
    frontend = get_settings().frontend_url.rstrip("/")
    if return_url.startswith("/") and not return_url.startswith("//"):
        return f"{frontend}{return_url}"
    if return_url == frontend or return_url.startswith(f"{frontend}/"):
        return return_url
    logger.warning("Ignoring foreign return_url %s", return_url)
    return None


# ---------------------------------------------------------------------------
# OAuth flow
# ---------------------------------------------------------------------------

@router.get("/auth/url")
async def get_auth_url(
    project_id: str = Query(...),
    return_url: str | None = Query(None),
    user: User = Depends(get_current_user),
    meta: MetaAPIService = Depends(get_meta_service),
):
    """Return the Facebook OAuth URL for the frontend to redirect to."""
    if not meta.app_id:
        raise HTTPException(status_code=400, detail="Meta App ID not configured. Set META_APP_ID env var.")
    state = create_oauth_state({
        "project_id": project_id,
        "user_id": str(user.id),
        "action": "connect",
        "return_url": return_url,
    })
    return {"success": True, "oauth_url": meta.get_oauth_url(state=state), "message": "Redirect to Meta OAuth"}


@router.get("/auth/callback")
async def oauth_callback(
    code: str | None = Query(None),
    state: str | None = Query(None),
    error: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    meta: MetaAPIService = Depends(get_meta_service),
):
    """Handle the Facebook OAuth callback: exchange code, store long-lived token."""
    if error:
        logger.warning("Facebook OAuth returned error: %s", error)
        raise HTTPException(status_code=400, detail="Facebook OAuth failed")
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state")

    state_data = decode_token(state)
    if state_data is None or state_data.get("type") != OAUTH_STATE_TYPE:
        logger.warning("Rejected unsigned or expired OAuth state")
        raise HTTPException(status_code=400, detail="Invalid or expired OAuth state")
    try:
        user_id = uuid.UUID(state_data["user_id"])
    except (ValueError, KeyError, TypeError):
        raise HTTPException(status_code=400, detail="Invalid OAuth state")

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        raise HTTPException(status_code=404, detail="User not found")

    try:
        token_data = await meta.exchange_code(code)
        short_token = token_data.get("access_token")
        if not short_token:
            raise HTTPException(status_code=400, detail="Failed to get access token")

        long_data = await meta.get_long_lived_token(short_token)
        long_token = long_data["access_token"]
        fb_user = await meta.get_user_info(long_token)
        accounts = await meta.list_ad_accounts(long_token)
    except MetaAPIError as e:
        raise _meta_failure("Failed to complete Meta connection", e)

    conn = await _get_connection(user, db)
    if not conn:
        conn = MetaConnection(user_id=user.id)
        db.add(conn)
    conn.access_token_encrypted = meta.encrypt_token(long_token)
    conn.token_expires_at = long_data.get("expires_at")
    conn.fb_user_id = fb_user.get("id")
    conn.fb_user_name = fb_user.get("name", "")
    conn.fb_user_email = fb_user.get("email")
    conn.ad_accounts = accounts
    conn.is_active = True
    await db.flush()
    logger.info("Meta connected for user %s with %d ad account(s)", user.id, len(accounts))

    redirect = _safe_return_url(state_data.get("return_url"))
    if not redirect:
        frontend_url = get_settings().frontend_url.rstrip("/")
        project_id = state_data.get("project_id") or ""
        redirect = f"{frontend_url}/dashboard/projects/{project_id}/plan?{urlencode({'meta_connected': 'true'})}"
    return RedirectResponse(url=redirect)


@router.post("/auth/remove")
async def remove_connection(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Disconnect Meta: deactivate the connection and clear token and accounts."""
    conn = await _get_connection(user, db)
    if conn:
        conn.is_active = False
        conn.access_token_encrypted = ""
        conn.ad_accounts = []
        await db.flush()
        logger.info("Meta connection removed for user %s", user.id)
    return {"success": True, "message": "Meta account removed successfully"}


# ---------------------------------------------------------------------------
# Connection status and discovery
# ---------------------------------------------------------------------------

@router.get("/status", response_model=MetaStatusResponse)
async def get_status(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    conn = await _get_connection(user, db)
    if not conn or not conn.is_active:
        return MetaStatusResponse(connected=False, accounts_count=0, accounts=[])
    accounts = [{
        "name": conn.fb_user_name,
        "email": conn.fb_user_email,
        "ad_accounts_count": len(conn.ad_accounts or []),
        "connected_at": conn.connected_at.isoformat() if conn.connected_at else None,
    }]
    return MetaStatusResponse(
        connected=True,
        accounts_count=len(accounts),
        accounts=accounts,
        fb_user_name=conn.fb_user_name,
        account_currency=conn.account_currency,
    )


@router.get("/accounts")
async def get_ad_accounts(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    meta: MetaAPIService = Depends(get_meta_service),
):
    conn, _ = await _require_connection(user, db, meta)
    return {"accounts": conn.ad_accounts or []}


@router.post("/refresh-accounts")
async def refresh_ad_accounts(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    meta: MetaAPIService = Depends(get_meta_service),
):
    """Refetch ad accounts from Meta and store them on the connection."""
    conn, token = await _require_connection(user, db, meta)
    try:
        accounts = await meta.list_ad_accounts(token)
    except MetaAPIError as e:
        raise _meta_failure("Failed to fetch ad accounts", e)
    conn.ad_accounts = accounts
    await db.flush()
    logger.info("Refreshed %d ad account(s) for user %s", len(accounts), user.id)
    return {"success": True, "accounts": accounts, "count": len(accounts)}


@router.get("/pages")
async def get_pages(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    meta: MetaAPIService = Depends(get_meta_service),
):
    _, token = await _require_connection(user, db, meta)
    try:
        pages = await meta.list_pages(token)
    except httpx.HTTPError as e:
        logger.error("Page lookup failed for user %s: %s", user.id, e)
        raise HTTPException(status_code=502, detail="Could not reach Meta to fetch pages")
    return {"pages": pages}


@router.get("/pixels")
async def get_pixels(
    ad_account_id: str = Query(..., min_length=1),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    meta: MetaAPIService = Depends(get_meta_service),
):
    _, token = await _require_connection(user, db, meta)
    try:
        pixels = await meta.list_pixels(token, ad_account_id)
    except MetaAPIError as e:
        raise _meta_failure("Failed to fetch pixels", e)
    return {"pixels": pixels}


@router.api_route("/account-currency", methods=["GET", "POST"])
async def account_currency(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    meta: MetaAPIService = Depends(get_meta_service),
):
    """Fetch the first ad account's currency from Meta and store it."""
    conn, token = await _require_connection(user, db, meta)
    if not conn.ad_accounts:
        raise HTTPException(status_code=400, detail="No ad account access token or ad accounts found")

    ad_account_id = conn.ad_accounts[0].get("id")
    try:
        account = await meta.get_ad_account(token, ad_account_id)
    except MetaAPIError as e:
        raise _meta_failure("Failed to fetch account currency", e)

    currency = account.get("currency") or "USD"
    conn.account_currency = currency
    await db.flush()
    return {
        "success": True,
        "currency": currency,
        "account_name": account.get("name"),
        "account_id": ad_account_id,
    }


@router.get("/campaigns")
async def get_campaigns(
    ad_account_id: str = Query(..., min_length=1),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    meta: MetaAPIService = Depends(get_meta_service),
    insights: InsightsService = Depends(get_insights_service),
):
    """Campaigns of an ad account with their ads and lifetime insights."""
    _, token = await _require_connection(user, db, meta)
    try:
        campaigns = await insights.campaigns_with_ads(token, ad_account_id)
    except MetaAPIError as e:
        raise _meta_failure("Failed to fetch campaigns", e)
    except httpx.HTTPError as e:
        logger.error("Campaign lookup failed for user %s: %s", user.id, e)
        raise HTTPException(status_code=502, detail="Could not reach Meta to fetch campaigns")
    return {"success": True, "campaigns": campaigns, "total": len(campaigns)}


@router.get("/ads")
async def get_ads(
    ad_account_id: str = Query(..., min_length=1),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    meta: MetaAPIService = Depends(get_meta_service),
    insights: InsightsService = Depends(get_insights_service),
):
    _, token = await _require_connection(user, db, meta)
    try:
        ads = await insights.ads_with_insights(token, ad_account_id)
    except MetaAPIError as e:
        raise _meta_failure("Failed to fetch ads", e)
    except httpx.HTTPError as e:
        logger.error("Ad lookup failed for user %s: %s", user.id, e)
        raise HTTPException(status_code=502, detail="Could not reach Meta to fetch ads")
    return {"success": True, "ads": ads, "total": len(ads)}


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------

@router.post("/publish-campaign")
async def publish_campaign(
    body: PublishCampaignRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    meta: MetaAPIService = Depends(get_meta_service),
    publisher: AdPublisher = Depends(get_publisher),
):
    """Create a single PAUSED campaign for a project."""
    project = await get_owned_project(body.project_id, user, db)
    _, token = await _require_connection(user, db, meta)
    try:
        return await publisher.publish_campaign(db, token, project, body)
    except PublishError as e:
        raise _publish_failure(e)


@router.post("/publish-adsets")
async def publish_adsets(
    body: PublishAdSetsRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    meta: MetaAPIService = Depends(get_meta_service),
    publisher: AdPublisher = Depends(get_publisher),
):
    """Create PAUSED ad sets under an existing campaign."""
    project = await get_owned_project(body.project_id, user, db)
    _, token = await _require_connection(user, db, meta)
    result = await publisher.publish_adsets(db, user.id, token, project, body)
    return JSONResponse(result, status_code=200 if result["success"] else 400)


@router.post("/publish-ads")
async def publish_ads(
    body: PublishAdsRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    meta: MetaAPIService = Depends(get_meta_service),
    publisher: AdPublisher = Depends(get_publisher),
):
    """Publish campaign, ad sets, creatives, and ads in one request."""
    project = await get_owned_project(body.project_id, user, db)
    conn, token = await _require_connection(user, db, meta)
    try:
        result = await publisher.publish_ads(db, user.id, token, conn, project, body)
    except PublishError as e:
        raise _publish_failure(e)
    return JSONResponse(result, status_code=200 if result["success"] else 400)


@router.post("/publish-ads/async", status_code=202)
async def publish_ads_async(
    body: PublishAdsRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    meta: MetaAPIService = Depends(get_meta_service),
):
    """Queue a full publish on the Celery worker."""
    project = await get_owned_project(body.project_id, user, db)
    await _require_connection(user, db, meta)

    from app.tasks.publish_tasks import publish_project_ads, run_publish_ads

    # Try Celery first, fall back to inline publish
    try:
        task = publish_project_ads.delay(str(user.id), body.model_dump())
    except OperationalError:
        logger.info("Celery not available, running publish inline for project %s", project.id)
        result = await run_publish_ads(str(user.id), body.model_dump(), meta=meta)
        return JSONResponse(result, status_code=200 if result.get("success") else 400)

    logger.info("Queued publish for project %s as task %s", project.id, task.id)
    return {"detail": "Publishing started.", "task_id": task.id}
