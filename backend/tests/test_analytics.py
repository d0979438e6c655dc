"""
Tests for campaign reporting: /api/v1/meta/campaigns, /api/v1/meta/ads and
/api/v1/analytics/*.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy import select

from app.models.analytics import RunningCampaign
from app.models.project import Project
from app.services.insights import merge_daily_log, summarize_insight

EXCHANGE_RATE_URL = "https://api.exchangerate-api.com/v4/latest/USD"
RATE_LIMITED = (400, {"error": {"message": "User request limit reached", "code": 17}})


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def _ago(minutes: int) -> str:
    return (datetime.now(timezone.utc) - timedelta(minutes=minutes)).isoformat()


@pytest_asyncio.fixture()
async def live_project(db_session, project: Project) -> Project:
    project.meta_campaign_id = "c1"
    project.meta_campaign_name = "Spring"
    await db_session.flush()
    return project


def _script_insights(graph):
    graph.on("GET", "/c1", {"id": "c1", "account_id": "123"})
    graph.on("GET", "/c1/insights", {"data": [{
        "impressions": "1000",
        "clicks": "50",
        "spend": "25.00",
        "cpc": "0.50",
        "actions": [{"action_type": "link_click", "value": "50"}, {"action_type": "lead", "value": "5"}],
    }]})
    graph.on("GET", "/c1/adsets", {"data": [
        {"id": "as-1", "name": "Runners", "effective_status": "ACTIVE"},
        {"id": "as-2", "name": "Walkers"},
    ]})
    graph.on("GET", "/as-1/insights", {"data": [{"impressions": "600", "clicks": "30", "spend": "15.00"}]})
    graph.on("GET", "/as-2/insights", {"data": [{"impressions": "400", "clicks": "20", "spend": "10.00"}]})


async def _running(db_session, project: Project) -> RunningCampaign | None:
    result = await db_session.execute(
        select(RunningCampaign).where(RunningCampaign.project_id == project.id)
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_summarize_insight_derives_lead_metrics():
    row = {
        "impressions": "200",
        "spend": "800",
        "cpc": "16",
        "actions": [{"action_type": "lead", "value": "4"}],
    }

    summary = summarize_insight(row, "INR", 0.0125)

    assert summary["currency"] == "USD"
    assert summary["original_currency"] == "INR"
    assert summary["spend"] == "10.00"
    assert summary["cpc"] == "0.20"
    assert summary["cpp"] == "0"
    assert summary["clicks"] == "0"
    assert summary["results"] == "4"
    assert summary["cost_per_result"] == "2.50"
    assert summary["leads_per_dollar"] == "0.40"
    assert summary["action_values"] == []


def test_summarize_insight_without_leads():
    summary = summarize_insight({"spend": "5"}, "USD", 1.0)

    assert summary["results"] == "0"
    assert summary["cost_per_result"] == "0"
    assert summary["leads_per_dollar"] == "0"


def test_merge_daily_log_replaces_date_and_keeps_newest():
    logs = [{"date": f"2026-09-{day:02d}"} for day in range(1, 31)]

    merged = merge_daily_log(logs, {"date": "2026-09-15", "fresh": True})
    assert len(merged) == 30
    assert merged[-1] == {"date": "2026-09-15", "fresh": True}
    assert [e["date"] for e in merged].count("2026-09-15") == 1

    merged = merge_daily_log(logs, {"date": "2026-10-01"})
    assert len(merged) == 30
    assert merged[0]["date"] == "2026-09-02"
    assert merged[-1]["date"] == "2026-10-01"


# ---------------------------------------------------------------------------
# POST /analytics/insights
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_refresh_insights_stores_daily_log(
    client: AsyncClient, auth_headers, meta_connection, live_project, graph, db_session
):
    _script_insights(graph)

    response = await client.post(
        "/api/v1/analytics/insights", json={"projectId": str(live_project.id)}, headers=auth_headers
    )

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["campaign_id"] == "c1"
    assert data["logs_saved_for"] == _today()
    assert data["adset_count"] == 2
    assert data["total_logs"] == 1
    assert data["summary"] == {
        "total_adsets": 2,
        "total_impressions": 1000,
        "total_clicks": 50,
        "total_spend": "25.00",
    }

    running = await _running(db_session, live_project)
    assert running.campaign_id == "c1"
    entry = running.logs[0]
    assert entry["campaign_data"]["results"] == "5"
    assert entry["campaign_data"]["cost_per_result"] == "5.00"
    assert entry["campaign_data"]["leads_per_dollar"] == "0.20"
    assert entry["adsets"]["as-1"]["adset_name"] == "Runners"
    assert entry["adsets"]["as-2"]["adset_status"] == "UNKNOWN"
    assert entry["adsets"]["as-2"]["spend"] == "10.00"

    params = graph.calls("GET", "/as-1/insights")[0].url.params
    assert json.loads(params["time_range"]) == {"since": _today(), "until": _today()}
    assert params["time_increment"] == "1"


@pytest.mark.asyncio
async def test_refresh_insights_converts_account_currency(
    client: AsyncClient, auth_headers, meta_connection, live_project, graph, db_session
):
    meta_connection.ad_accounts = [{"id": "act_123", "account_id": "123", "currency": "INR"}]
    await db_session.flush()
    graph.on("GET", EXCHANGE_RATE_URL, {"rates": {"INR": 80}})
    graph.on("GET", "/c1", {"id": "c1", "account_id": "123"})
    graph.on("GET", "/c1/insights", {"data": [{"spend": "800", "cpm": "40"}]})
    graph.on("GET", "/c1/adsets", {"data": [{"id": "as-1"}]})
    graph.on("GET", "/as-1/insights", {"data": [{"spend": "400"}]})

    response = await client.post(
        "/api/v1/analytics/insights", json={"project_id": str(live_project.id)}, headers=auth_headers
    )

    assert response.status_code == 200
    assert response.json()["summary"]["total_spend"] == "5.00"
    campaign = (await _running(db_session, live_project)).logs[0]["campaign_data"]
    assert campaign["original_currency"] == "INR"
    assert campaign["exchange_rate"] == 0.0125
    assert campaign["spend"] == "10.00"
    assert campaign["cpm"] == "0.50"


@pytest.mark.asyncio
async def test_refresh_insights_returns_recent_entry_without_calling_meta(
    client: AsyncClient, auth_headers, meta_connection, live_project, graph, db_session
):
    cached = {"date": _today(), "timestamp": _ago(5), "adsets": {"as-1": {}}, "summary": {"total_adsets": 1}}
    db_session.add(RunningCampaign(
        user_id=live_project.user_id, project_id=live_project.id, campaign_id="c1", logs=[cached],
    ))
    await db_session.flush()

    response = await client.post(
        "/api/v1/analytics/insights", json={"projectId": str(live_project.id)}, headers=auth_headers
    )

    assert response.status_code == 200
    data = response.json()
    assert data["cached"] is True
    assert data["adset_count"] == 1
    assert data["logs"] == cached
    assert "Refresh after 15 minutes" in data["message"]
    assert graph.requests == []


@pytest.mark.asyncio
async def test_refresh_insights_replaces_todays_stale_entry(
    client: AsyncClient, auth_headers, meta_connection, live_project, graph, db_session
):
    older = {"date": "2026-01-01", "timestamp": "2026-01-01T10:00:00+00:00"}
    stale = {"date": _today(), "timestamp": _ago(20), "summary": {"total_adsets": 0}}
    db_session.add(RunningCampaign(
        user_id=live_project.user_id, project_id=live_project.id, campaign_id="c1", logs=[older, stale],
    ))
    await db_session.flush()
    _script_insights(graph)

    response = await client.post(
        "/api/v1/analytics/insights", json={"projectId": str(live_project.id)}, headers=auth_headers
    )

    assert response.status_code == 200
    assert response.json()["total_logs"] == 2
    running = await _running(db_session, live_project)
    await db_session.refresh(running)
    assert running.logs[0] == older
    assert running.logs[1]["summary"]["total_adsets"] == 2


@pytest.mark.asyncio
async def test_refresh_insights_rate_limited(
    client: AsyncClient, auth_headers, meta_connection, live_project, graph, db_session
):
    graph.on("GET", "/c1", {"id": "c1", "account_id": "123"})
    graph.on("GET", "/c1/insights", RATE_LIMITED)

    response = await client.post(
        "/api/v1/analytics/insights", json={"projectId": str(live_project.id)}, headers=auth_headers
    )

    assert response.status_code == 429
    assert response.json() == {
        "error": "Rate limit reached",
        "message": "Meta API rate limit exceeded. Please wait 15-30 minutes before refreshing insights.",
        "error_code": 17,
        "retry_after_minutes": 15,
    }
    assert graph.calls("GET", "/c1/adsets") == []
    assert await _running(db_session, live_project) is None


@pytest.mark.asyncio
async def test_refresh_insights_stops_at_rate_limited_ad_set(
    client: AsyncClient, auth_headers, meta_connection, live_project, graph, db_session
):
    _script_insights(graph)
    graph.on("GET", "/as-1/insights", RATE_LIMITED)

    response = await client.post(
        "/api/v1/analytics/insights", json={"projectId": str(live_project.id)}, headers=auth_headers
    )

    assert response.status_code == 200
    assert response.json()["summary"]["total_spend"] == "0.00"
    assert graph.calls("GET", "/as-2/insights") == []
    adsets = (await _running(db_session, live_project)).logs[0]["adsets"]
    assert list(adsets) == ["as-1"]
    assert adsets["as-1"]["error"] == "Rate limit reached - data not available"
    assert adsets["as-1"]["error_code"] == 17


@pytest.mark.asyncio
async def test_refresh_insights_records_missing_data(
    client: AsyncClient, auth_headers, meta_connection, live_project, graph, db_session
):
    graph.on("GET", "/c1", {"id": "c1", "account_id": "123"})
    graph.on("GET", "/c1/insights", {"data": []})
    graph.on("GET", "/c1/adsets", {"data": [{"id": "as-1"}, {"id": "as-2"}]})
    graph.on("GET", "/as-1/insights", {"data": []})
    graph.on("GET", "/as-2/insights", (400, {"error": {"message": "Unsupported get request", "code": 100}}))

    response = await client.post(
        "/api/v1/analytics/insights", json={"projectId": str(live_project.id)}, headers=auth_headers
    )

    assert response.status_code == 200
    entry = (await _running(db_session, live_project)).logs[0]
    assert entry["campaign_data"]["error"] == "No campaign data available"
    assert entry["adsets"]["as-1"]["error"] == "No data available"
    assert entry["adsets"]["as-2"]["error"]["code"] == 100


@pytest.mark.asyncio
async def test_refresh_insights_ad_set_listing_failure(
    client: AsyncClient, auth_headers, meta_connection, live_project, graph
):
    graph.on("GET", "/c1", {"id": "c1", "account_id": "123"})
    graph.on("GET", "/c1/insights", {"data": []})
    graph.on("GET", "/c1/adsets", (400, {"error": {"message": "Invalid campaign", "code": 100}}))

    response = await client.post(
        "/api/v1/analytics/insights", json={"projectId": str(live_project.id)}, headers=auth_headers
    )

    assert response.status_code == 400
    assert response.json()["error"] == "Failed to fetch ad sets"
    assert response.json()["details"]["message"] == "Invalid campaign"


@pytest.mark.asyncio
async def test_refresh_insights_requires_linked_campaign(client: AsyncClient, auth_headers, meta_connection, project):
    response = await client.post(
        "/api/v1/analytics/insights", json={"projectId": str(project.id)}, headers=auth_headers
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "No campaign linked to this project"


@pytest.mark.asyncio
async def test_refresh_insights_unknown_project(client: AsyncClient, auth_headers, meta_connection):
    response = await client.post(
        "/api/v1/analytics/insights", json={"projectId": str(uuid.uuid4())}, headers=auth_headers
    )

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_refresh_insights_requires_connection(client: AsyncClient, auth_headers, live_project):
    response = await client.post(
        "/api/v1/analytics/insights", json={"projectId": str(live_project.id)}, headers=auth_headers
    )

    assert response.status_code == 400
    assert "not connected" in response.json()["detail"]


# ---------------------------------------------------------------------------
# GET /analytics
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_campaign_report_uses_date_preset(client: AsyncClient, auth_headers, meta_connection, graph):
    graph.on("GET", "/c1/insights", {"data": [{"impressions": "10", "date_start": "2026-10-10"}]})

    default = await client.get("/api/v1/analytics", params={"campaign_id": "c1"}, headers=auth_headers)
    monthly = await client.get(
        "/api/v1/analytics", params={"campaign_id": "c1", "date_preset": "last_30d"}, headers=auth_headers
    )

    assert default.status_code == 200
    assert default.json() == {"data": [{"impressions": "10", "date_start": "2026-10-10"}]}
    first, second = graph.calls("GET", "/c1/insights")
    assert first.url.params["date_preset"] == "last_7d"
    assert "date_stop" in first.url.params["fields"]
    assert second.url.params["date_preset"] == "last_30d"
    assert monthly.status_code == 200


@pytest.mark.asyncio
async def test_campaign_report_requires_campaign_id(client: AsyncClient, auth_headers, meta_connection):
    response = await client.get("/api/v1/analytics", headers=auth_headers)

    assert response.status_code == 422


# ---------------------------------------------------------------------------
# GET /meta/campaigns and /meta/ads
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_campaigns_with_ads_and_insights(client: AsyncClient, auth_headers, meta_connection, graph):
    graph.on("GET", "/act_123/campaigns", {"data": [{"id": "c1", "name": "Spring"}, {"id": "c2", "name": "Old"}]})
    graph.on("GET", "/c1/ads", {"data": [{"id": "ad-1", "name": "Ad"}]})
    graph.on("GET", "/c1/insights", {"data": [{"impressions": "100"}]})
    graph.on("GET", "/c2/ads", (400, {"error": {"message": "Campaign deleted", "code": 100}}))

    response = await client.get("/api/v1/meta/campaigns", params={"ad_account_id": "123"}, headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["total"] == 2
    spring, old = data["campaigns"]
    assert spring["ads"] == [{"id": "ad-1", "name": "Ad"}]
    assert spring["insights"] == {"impressions": "100"}
    assert old["ads"] == []
    assert old["insights"] is None
    assert "creative{" in graph.calls("GET", "/c1/ads")[0].url.params["fields"]


@pytest.mark.asyncio
async def test_campaigns_listing_failure(client: AsyncClient, auth_headers, meta_connection, graph):
    graph.on("GET", "/act_123/campaigns", (400, {"error": {"message": "No permission", "code": 200}}))

    response = await client.get("/api/v1/meta/campaigns", params={"ad_account_id": "act_123"}, headers=auth_headers)

    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "Failed to fetch campaigns"
    assert response.json()["detail"]["details"] == "No permission"


@pytest.mark.asyncio
async def test_ads_with_insights(client: AsyncClient, auth_headers, meta_connection, graph):
    graph.on("GET", "/act_123/ads", {"data": [{"id": "ad-1"}, {"id": "ad-2"}]})
    graph.on("GET", "/ad-1/insights", {"data": [{"clicks": "7"}]})
    graph.on("GET", "/ad-2/insights", {"data": []})

    response = await client.get("/api/v1/meta/ads", params={"ad_account_id": "123"}, headers=auth_headers)

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "ads": [{"id": "ad-1", "insights": {"clicks": "7"}}, {"id": "ad-2", "insights": None}],
        "total": 2,
    }


@pytest.mark.asyncio
async def test_reporting_requires_connection(client: AsyncClient, auth_headers):
    campaigns = await client.get("/api/v1/meta/campaigns", params={"ad_account_id": "123"}, headers=auth_headers)
    ads = await client.get("/api/v1/meta/ads", params={"ad_account_id": "123"}, headers=auth_headers)

    assert campaigns.status_code == 400
    assert ads.status_code == 400
