"""Meta Graph API client: OAuth, account discovery, and ad publishing calls."""

import json
import logging
import re
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

import httpx
from cryptography.fernet import Fernet

from app.config import get_settings

logger = logging.getLogger(__name__)

# Pagination URLs may come back with a newer API version than the app is approved for
_VERSION_RE = re.compile(r"graph\.facebook\.com/v[\d.]+/")

REQUIRED_SCOPES = [
    "email",
    "public_profile",
    "ads_management",
    "business_management",
    "ads_read",
    "pages_show_list",
    "pages_read_engagement",
    "read_insights",
]

AD_ACCOUNT_FIELDS = "id,account_id,name,account_status,currency,timezone_id,disable_reason"
CAMPAIGN_FIELDS = (
    "id,name,status,objective,daily_budget,lifetime_budget,created_time,updated_time,start_time,stop_time"
)
CAMPAIGN_AD_FIELDS = "id,name,status,created_time,updated_time,creative{id,name,title,body,image_url,object_story_spec}"
ACCOUNT_AD_FIELDS = (
    "id,name,status,created_time,updated_time,campaign_id,adset_id,"
    "creative{id,name,title,body,image_url,video_id,object_story_spec}"
)

# Graph error code for "too many calls"
RATE_LIMIT_CODE = 17

# Minimum plausible size of a downloaded image; anything smaller is an error page or empty
MIN_IMAGE_BYTES = 100

# Malformed URLs surface as InvalidURL or a bare ValueError rather than an HTTPError
_URL_ERRORS = (httpx.HTTPError, httpx.InvalidURL, ValueError)


class MetaAPIError(Exception):
    """A Graph API call failed; ``error`` is the parsed Graph ``error`` object."""

    def __init__(self, message: str, status_code: int = 400, error: dict | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error = error or {}

    @classmethod
    def from_response(cls, resp: httpx.Response, body: dict | None) -> "MetaAPIError":
        error = (body or {}).get("error")
        if not isinstance(error, dict):
            error = {"message": str(error) if error else resp.text[:500] or "Unknown error"}
        return cls(error.get("message") or "Unknown error", resp.status_code, error)

    @property
    def code(self) -> int | None:
        return self.error.get("code")

    @property
    def error_subcode(self) -> int | None:
        return self.error.get("error_subcode")

    @property
    def error_type(self) -> str | None:
        return self.error.get("type")

    @property
    def user_title(self) -> str | None:
        return self.error.get("error_user_title")

    @property
    def user_message(self) -> str | None:
        return self.error.get("error_user_msg")

    @property
    def fbtrace_id(self) -> str | None:
        return self.error.get("fbtrace_id")

    @property
    def is_rate_limited(self) -> bool:
        return self.code == RATE_LIMIT_CODE

    def log_fields(self) -> dict:
        return {
            "message": self.message,
            "type": self.error_type,
            "code": self.code,
            "error_subcode": self.error_subcode,
            "error_user_title": self.user_title,
            "error_user_msg": self.user_message,
            "fbtrace_id": self.fbtrace_id,
            "http_status": self.status_code,
        }


class ImageUploadError(Exception):
    """Neither the URL nor the binary upload produced an image hash."""


def format_ad_account_id(ad_account_id: str) -> str:
    """Ensure an ad account id carries Meta's ``act_`` prefix."""
    return ad_account_id if ad_account_id.startswith("act_") else f"act_{ad_account_id}"


def _encode_form(payload: dict) -> dict:
    """Graph API form encoding: nested objects as JSON, booleans lowercase."""
    encoded = {}
    for key, value in payload.items():
        if value is None:
            continue
        if isinstance(value, bool):
            encoded[key] = "true" if value else "false"
        elif isinstance(value, (dict, list)):
            encoded[key] = json.dumps(value)
        else:
            encoded[key] = str(value)
    return encoded


def _extract_image_hash(body: dict) -> str | None:
    """Pull the image hash out of either adimages response shape."""
    data = body.get("data")
    if isinstance(data, list) and data and data[0].get("hash"):
        return data[0]["hash"]
    images = body.get("images")
    if isinstance(images, dict):
        for image in images.values():
            if isinstance(image, dict) and image.get("hash"):
                return image["hash"]
    return None


class MetaAPIService:
    """Wraps the Meta Graph API for OAuth, discovery, and publishing."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        settings = get_settings()
        self.app_id = settings.meta_app_id
        self.app_secret = settings.meta_app_secret
        self.redirect_uri = settings.effective_meta_redirect_uri
        self.api_version = settings.meta_graph_version
        self.graph_base = f"https://graph.facebook.com/{self.api_version}"
        self.timeout = settings.meta_http_timeout
        self._transport = transport
        self._fernet = Fernet(settings.token_encryption_key.encode()) if settings.token_encryption_key else None

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout or self.timeout, transport=self._transport)

    def _pin_api_version(self, url: str | None) -> str | None:
        """Rewrite a pagination URL to use our pinned API version."""
        if not url:
            return None
        return _VERSION_RE.sub(f"graph.facebook.com/{self.api_version}/", url)

    # -- Token encryption helpers ------------------------------------------

    def encrypt_token(self, token: str) -> str:
        if not self._fernet:
            raise RuntimeError("TOKEN_ENCRYPTION_KEY not configured")
        return self._fernet.encrypt(token.encode()).decode()

    def decrypt_token(self, encrypted: str) -> str:
        if not self._fernet:
            raise RuntimeError("TOKEN_ENCRYPTION_KEY not configured")
        return self._fernet.decrypt(encrypted.encode()).decode()

    def _auth_params(self, access_token: str) -> dict:
        """Return auth query params for Graph API calls."""
        return {"access_token": access_token}

    # -- Low-level request helpers -------------------------------------------

    async def _send(self, client: httpx.AsyncClient, method: str, url: str, **kwargs) -> dict:
        """Send a Graph request and return the JSON body, raising MetaAPIError on failure."""
        resp = await client.request(method, url, **kwargs)
        try:
            body = resp.json()
        except ValueError:
            body = None
        if resp.is_error or not isinstance(body, dict) or "error" in body:
            raise MetaAPIError.from_response(resp, body if isinstance(body, dict) else None)
        return body

    async def _get(self, access_token: str, path: str, params: dict | None = None) -> dict:
        async with self._client() as client:
            return await self._send(
                client, "GET", f"{self.graph_base}/{path}",
                params={**self._auth_params(access_token), **(params or {})},
            )

    async def _get_all(self, access_token: str, path: str, params: dict) -> list[dict]:
        """GET an edge and follow ``paging.next`` until exhausted."""
        rows = []
        url = f"{self.graph_base}/{path}"
        params = {**self._auth_params(access_token), **params}
        async with self._client() as client:
            while url:
                data = await self._send(client, "GET", url, params=params)
                rows.extend(data.get("data", []))
                url = self._pin_api_version(data.get("paging", {}).get("next"))
                params = {}  # next URL includes params
        return rows

    async def _post(self, access_token: str, path: str, payload: dict) -> dict:
        async with self._client() as client:
            return await self._send(
                client, "POST", f"{self.graph_base}/{path}",
                params=self._auth_params(access_token),
                data=_encode_form(payload),
            )

    # -- OAuth flow --------------------------------------------------------

    def get_oauth_url(self, state: str = "") -> str:
        """Return the Facebook OAuth dialog URL."""
        params = {
            "client_id": self.app_id,
            "redirect_uri": self.redirect_uri,
            "scope": ",".join(REQUIRED_SCOPES),
            "response_type": "code",
            "state": state,
        }
        return f"https://www.facebook.com/{self.api_version}/dialog/oauth?{urlencode(params)}"

    async def exchange_code(self, code: str) -> dict:
        """Exchange authorization code for a short-lived access token."""
        async with self._client() as client:
            return await self._send(
                client, "GET", f"{self.graph_base}/oauth/access_token",
                params={
                    "client_id": self.app_id,
                    "client_secret": self.app_secret,
                    "redirect_uri": self.redirect_uri,
                    "code": code,
                },
            )

    async def get_long_lived_token(self, short_token: str) -> dict:
        """Exchange a short-lived token for a long-lived one (~60 days)."""
        async with self._client() as client:
            data = await self._send(
                client, "GET", f"{self.graph_base}/oauth/access_token",
                params={
                    "grant_type": "fb_exchange_token",
                    "client_id": self.app_id,
                    "client_secret": self.app_secret,
                    "fb_exchange_token": short_token,
                },
            )
        expires_in = data.get("expires_in", 5184000)  # default 60 days
        data["expires_at"] = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        return data

    # -- Discovery ---------------------------------------------------------

    async def get_user_info(self, access_token: str) -> dict:
        """Fetch basic info about the authenticated Facebook user."""
        return await self._get(access_token, "me", {"fields": "id,name,email"})

    async def list_ad_accounts(self, access_token: str) -> list[dict]:
        """List all ad accounts the user has access to, normalized."""
        accounts = []
        rows = await self._get_all(access_token, "me/adaccounts", {"fields": AD_ACCOUNT_FIELDS, "limit": 100})
        for acc in rows:
            acc_id = acc.get("id")
            accounts.append({
                "id": acc_id,
                "account_id": acc.get("account_id")
                or (acc_id.removeprefix("act_") if isinstance(acc_id, str) else None),
                "name": acc.get("name"),
                "account_status": acc.get("account_status"),
                "currency": acc.get("currency"),
                "timezone_id": acc.get("timezone_id"),
                "disable_reason": acc.get("disable_reason"),
            })
        return accounts

    async def get_ad_account(self, access_token: str, ad_account_id: str, fields: str = "currency,name,account_status") -> dict:
        return await self._get(access_token, format_ad_account_id(ad_account_id), {"fields": fields})

    async def list_pages(self, access_token: str, ad_account_id: str | None = None) -> list[dict]:
        """List Facebook pages usable for ads.

        Tries, in order: pages the user manages (``/me/accounts``), pages the
        ad account can promote, and the ``accounts`` edge on ``/me``. The
        first strategy that returns pages wins.
        """
        strategies = [("me/accounts", {"fields": "id,name,category"}, "data")]
        if ad_account_id:
            strategies.append((f"{format_ad_account_id(ad_account_id)}/promote_pages", {"fields": "id,name,category"}, "data"))
        strategies.append(("me", {"fields": "accounts{id,name,category}"}, "accounts"))

        for path, params, key in strategies:
            try:
                body = await self._get(access_token, path, params)
            except MetaAPIError as e:
                logger.warning("Page lookup via %s failed: %s", path, e.message)
                continue
            container = body.get(key) or {}
            items = container.get("data", []) if key == "accounts" else container
            if items:
                return [
                    {"page_id": pg.get("id"), "name": pg.get("name"), "category": pg.get("category")}
                    for pg in items
                ]
        return []

    async def list_pixels(self, access_token: str, ad_account_id: str) -> list[dict]:
        """List Meta pixels for an ad account."""
        body = await self._get(
            access_token,
            f"{format_ad_account_id(ad_account_id)}/adspixels",
            {"fields": "id,name,creation_time", "limit": 100},
        )
        return [
            {
                "pixel_id": px.get("id", ""),
                "name": px.get("name", "Unknown"),
                "creation_time": px.get("creation_time"),
            }
            for px in body.get("data", [])
        ]

    async def get_object(self, access_token: str, object_id: str, fields: str) -> dict:
        return await self._get(access_token, object_id, {"fields": fields})

    # -- Reporting -----------------------------------------------------------

    async def list_campaigns(self, access_token: str, ad_account_id: str) -> list[dict]:
        """Fetch all campaigns for an ad account."""
        return await self._get_all(
            access_token,
            f"{format_ad_account_id(ad_account_id)}/campaigns",
            {"fields": CAMPAIGN_FIELDS, "limit": 200},
        )

    async def list_adsets(self, access_token: str, campaign_id: str, fields: str = "id,name,effective_status") -> list[dict]:
        """Fetch all ad sets for a campaign."""
        return await self._get_all(access_token, f"{campaign_id}/adsets", {"fields": fields, "limit": 200})

    async def list_ads(self, access_token: str, parent_id: str, fields: str = ACCOUNT_AD_FIELDS) -> list[dict]:
        """Fetch ads under an ad account (``act_...``) or a campaign."""
        return await self._get_all(access_token, f"{parent_id}/ads", {"fields": fields, "limit": 100})

    async def get_insights(self, access_token: str, object_id: str, fields: str, **params) -> list[dict]:
        """Insight rows for one campaign, ad set, or ad.

        Extra params (``date_preset``, ``time_range``, ``time_increment``) are
        passed through; dict values are sent as JSON.
        """
        query = {"fields": fields}
        for key, value in params.items():
            if value is None:
                continue
            query[key] = json.dumps(value) if isinstance(value, (dict, list)) else value
        return await self._get_all(access_token, f"{object_id}/insights", query)

    # -- Publishing ----------------------------------------------------------

    async def create_campaign(self, access_token: str, ad_account_id: str, payload: dict) -> dict:
        return await self._post(access_token, f"{format_ad_account_id(ad_account_id)}/campaigns", payload)

    async def create_adset(self, access_token: str, ad_account_id: str, payload: dict) -> dict:
        return await self._post(access_token, f"{format_ad_account_id(ad_account_id)}/adsets", payload)

    async def create_ad_creative(self, access_token: str, ad_account_id: str, payload: dict) -> dict:
        return await self._post(access_token, f"{format_ad_account_id(ad_account_id)}/adcreatives", payload)

    async def create_ad(self, access_token: str, ad_account_id: str, payload: dict) -> dict:
        return await self._post(access_token, f"{format_ad_account_id(ad_account_id)}/ads", payload)

    async def update_status(self, access_token: str, object_id: str, status: str) -> dict:
        """Update campaign, ad set, or ad status (ACTIVE, PAUSED, ...)."""
        return await self._post(access_token, object_id, {"status": status})

    async def upload_image(self, access_token: str, ad_account_id: str, image_url: str) -> str:
        """Upload an image to the ad account's library and return its hash.

        Meta is first asked to fetch the URL itself; if that does not yield a
        hash the image is downloaded here and sent as multipart ``bytes``.
        """
        act = format_ad_account_id(ad_account_id)
        adimages_url = f"{self.graph_base}/{act}/adimages"

        async with self._client(timeout=60) as client:
            try:
                head = await client.head(image_url, follow_redirects=True)
                if head.is_error:
                    logger.warning("Image URL answered HEAD with %s: %s", head.status_code, image_url)
            except _URL_ERRORS as e:
                logger.warning("Image URL HEAD check failed for %s: %s", image_url, e)

            try:
                body = await self._send(
                    client, "GET", adimages_url,
                    params={**self._auth_params(access_token), "url": image_url},
                )
                image_hash = _extract_image_hash(body)
                if image_hash:
                    logger.info("Uploaded image via URL method: %s", image_hash)
                    return image_hash
                logger.info("URL upload returned no hash, trying binary upload")
            except (MetaAPIError, httpx.HTTPError) as e:
                logger.info("URL upload failed (%s), trying binary upload", e)

            try:
                image_resp = await client.get(image_url, headers={"Accept": "image/*"}, follow_redirects=True)
            except _URL_ERRORS as e:
                raise ImageUploadError(f"Failed to download image: {e}") from e
            if image_resp.is_error:
                raise ImageUploadError(
                    f"Failed to download image: {image_resp.status_code} {image_resp.reason_phrase}"
                )
            content = image_resp.content
            if len(content) == 0:
                raise ImageUploadError("Downloaded image is empty (0 bytes)")
            if len(content) < MIN_IMAGE_BYTES:
                raise ImageUploadError("Downloaded content is not a valid image")

            content_type = image_resp.headers.get("content-type") or "image/png"
            resp = await client.post(
                adimages_url,
                params=self._auth_params(access_token),
                files={"bytes": ("ad-image.png", content, content_type)},
            )
            try:
                body = resp.json()
            except ValueError:
                body = {}
            image_hash = _extract_image_hash(body) if isinstance(body, dict) else None
            if not image_hash:
                raise ImageUploadError(f"Binary upload failed: {json.dumps(body)[:500]}")
            logger.info("Uploaded image via binary method: %s", image_hash)
            return image_hash
