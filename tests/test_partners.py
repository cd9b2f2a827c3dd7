import json
import time
from datetime import date, timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy import select

from promorang.core.errors import BadRequest, Conflict, Unauthorized
from promorang.models.partners import PartnerApp, PartnerUsage, WebhookEvent
from promorang.services.partners_service import (
    get_partner_usage,
    handle_partner_webhook,
    hash_api_key,
    record_usage,
    register_partner,
    review_partner_app,
    validate_partner_api_key,
)
from promorang.services.payments_service import verify_stripe_signature

from conftest import admin_headers, make_user, user_headers


async def _approved_app(db, admin, owner, **kwargs):
    fields = {"app_name": "Shopify sync", "app_url": "https://partner.example.com"}
    fields.update(kwargs)
    registered = await register_partner(db, owner.id, **fields)
    app = await review_partner_app(db, admin.id, registered["partner_app"]["id"], "approve")
    return app, registered


def test_hash_api_key_is_stable_sha256():
    assert hash_api_key("pk_abc") == hash_api_key("pk_abc")
    assert hash_api_key("pk_abc") != hash_api_key("pk_abd")
    assert len(hash_api_key("pk_abc")) == 64


async def test_register_stores_only_the_key_digest(db):
    owner = await make_user(db, "partner")
    result = await register_partner(db, owner.id, "Analytics", "https://a.example.com",
                                    permissions=["read_economy", "webhooks"])

    api_key = result["api_key"]
    assert api_key.startswith("pk_")
    assert result["webhook_secret"].startswith("whsec_")
    assert result["partner_app"]["status"] == "pending"
    assert result["partner_app"]["api_key_prefix"] == api_key[:10]

    row = (await db.execute(select(PartnerApp))).scalar_one()
    assert row.api_key_hash == hash_api_key(api_key)
    assert api_key not in (row.api_key_hash, row.api_key_prefix)


@pytest.mark.parametrize("fields", [
    {"app_name": "", "app_url": "https://a.example.com"},
    {"app_name": "x", "app_url": "ftp://a.example.com"},
    {"app_name": "x", "app_url": "https://a.example.com", "webhook_url": "not-a-url"},
    {"app_name": "x", "app_url": "https://a.example.com", "permissions": ["write_balances"]},
])
async def test_register_validation(db, fields):
    owner = await make_user(db, "partner")
    with pytest.raises(BadRequest):
        await register_partner(db, owner.id, **fields)


async def test_only_approved_apps_validate(db, admin):
    owner = await make_user(db, "partner")
    registered = await register_partner(db, owner.id, "Analytics", "https://a.example.com")
    api_key = registered["api_key"]

    with pytest.raises(Unauthorized):
        await validate_partner_api_key(db, api_key)
    with pytest.raises(Unauthorized):
        await validate_partner_api_key(db, None)

    await review_partner_app(db, admin.id, registered["partner_app"]["id"], "approve")
    app = await validate_partner_api_key(db, api_key)
    assert app.partner_id == owner.id
    with pytest.raises(Unauthorized):
        await validate_partner_api_key(db, api_key + "x")

    with pytest.raises(Conflict):
        await review_partner_app(db, admin.id, app.id, "approve")
    await review_partner_app(db, admin.id, app.id, "suspend")
    with pytest.raises(Unauthorized):
        await validate_partner_api_key(db, api_key)


async def test_webhook_delivery_is_signed(db, admin):
    owner = await make_user(db, "partner")
    app, registered = await _approved_app(db, admin, owner, webhook_url="https://hooks.example.com/promorang")

    with patch.object(httpx.AsyncClient, "post", new=AsyncMock(return_value=httpx.Response(200))) as post:
        result = await handle_partner_webhook(db, app, "content_created", {"content_id": 7})

    assert result["delivery_status"] == "delivered"
    url = post.call_args.args[0]
    body = post.call_args.kwargs["content"]
    headers = post.call_args.kwargs["headers"]
    assert url == "https://hooks.example.com/promorang"
    assert json.loads(body)["event_data"] == {"content_id": 7}
    verify_stripe_signature(body, headers["X-Promorang-Signature"], registered["webhook_secret"], 300,
                            now=int(time.time()))

    event = (await db.execute(
        select(WebhookEvent).where(WebhookEvent.id == result["event_id"]).execution_options(populate_existing=True)
    )).scalar_one()
    assert event.delivery_status == "delivered"
    assert event.delivery_attempts == 1
    assert event.last_delivery_at is not None


async def test_webhook_timeout_marks_event_failed(db, admin):
    owner = await make_user(db, "partner")
    app, _ = await _approved_app(db, admin, owner, webhook_url="https://hooks.example.com/slow")

    with patch.object(httpx.AsyncClient, "post", new=AsyncMock(side_effect=httpx.ReadTimeout("slow"))):
        result = await handle_partner_webhook(db, app, "drop_completed", {"drop_id": 1})

    assert result["delivery_status"] == "failed"
    event = (await db.execute(
        select(WebhookEvent).where(WebhookEvent.id == result["event_id"]).execution_options(populate_existing=True)
    )).scalar_one()
    assert event.delivery_status == "failed"
    assert event.delivery_attempts == 1


async def test_unknown_event_is_stored_without_delivery(db, admin):
    owner = await make_user(db, "partner")
    app, _ = await _approved_app(db, admin, owner, webhook_url="https://hooks.example.com/promorang")

    with patch.object(httpx.AsyncClient, "post", new=AsyncMock()) as post:
        result = await handle_partner_webhook(db, app, "user_signed_up", None)
    assert result["delivery_status"] == "stored"
    post.assert_not_called()

    no_url, _ = await _approved_app(db, admin, owner, app_name="No hooks")
    result = await handle_partner_webhook(db, no_url, "staking_reward", {"gems": 1})
    assert result["delivery_status"] == "skipped"

    with pytest.raises(BadRequest):
        await handle_partner_webhook(db, app, " ", None)


async def test_usage_covers_last_30_days_of_own_apps(db, admin):
    owner = await make_user(db, "partner")
    other = await make_user(db, "other")
    app, _ = await _approved_app(db, admin, owner)
    foreign, _ = await _approved_app(db, admin, other)

    await record_usage(db, app.id, "economy", 200, 10)
    await record_usage(db, app.id, "economy", 403, 30)
    await record_usage(db, app.id, "validate", 200, 5)
    await record_usage(db, foreign.id, "economy", 200, 1)
    db.add(PartnerUsage(partner_app_id=app.id, endpoint="economy", request_count=50, status_code=200,
                        usage_date=date.today() - timedelta(days=45)))
    await db.commit()

    usage = await get_partner_usage(db, owner.id)

    assert usage["period"] == "30 days"
    assert usage["usage_by_endpoint"][0] == {
        "endpoint": "economy", "total_requests": 2, "avg_response_time": 20.0, "error_count": 1,
    }
    assert usage["usage_by_endpoint"][1]["endpoint"] == "validate"
    assert usage["total_usage"]["total_requests"] == 3


class TestPartnerRoutes:
    async def test_register_approve_and_read_economy(self, client, db, admin):
        owner = await make_user(db, "partner")
        resp = await client.post("/api/partners/register", headers=user_headers(owner.id), json={
            "app_name": "Rates widget", "app_url": "https://widget.example.com",
        })
        assert resp.status_code == 200
        body = resp.json()["data"]
        api_key = body["api_key"]

        pending = await client.get("/api/partners/economy", headers={"X-API-Key": api_key})
        assert pending.status_code == 401

        review = await client.post(f"/api/admin/partners/{body['partner_app']['id']}/review",
                                   json={"action": "approve"}, headers=admin_headers(admin.id))
        assert review.json()["data"]["status"] == "approved"

        economy = await client.get("/api/partners/economy", headers={"X-API-Key": api_key})
        assert economy.status_code == 200
        rules = economy.json()["data"]["conversion_rules"]
        assert [(r["from"], r["to"], r["rate"]) for r in rules] == [("points", "keys", 500)]

        by_query = await client.post(f"/api/partners/validate?api_key={api_key}")
        assert by_query.json()["data"]["permissions"] == ["read_economy"]

        apps = await client.get("/api/partners/apps", headers=user_headers(owner.id))
        assert [a["app_name"] for a in apps.json()["data"]] == ["Rates widget"]
        usage = await client.get("/api/partners/usage", headers=user_headers(owner.id))
        assert usage.json()["data"]["total_usage"]["total_requests"] == 2

    async def test_missing_permission_is_forbidden_and_counted(self, client, db, admin):
        owner = await make_user(db, "partner")
        app, registered = await _approved_app(db, admin, owner, permissions=["webhooks"])

        resp = await client.get("/api/partners/economy", headers={"X-API-Key": registered["api_key"]})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "FORBIDDEN"

        usage = await get_partner_usage(db, owner.id)
        assert usage["usage_by_endpoint"][0]["error_count"] == 1

    async def test_partner_event_route(self, client, db, admin):
        owner = await make_user(db, "partner")
        _, registered = await _approved_app(db, admin, owner)

        resp = await client.post("/api/partners/webhook", headers={"X-API-Key": registered["api_key"]},
                                 json={"event_type": "order_synced", "event_data": {"order": "A-1"}})
        assert resp.status_code == 200
        assert resp.json()["data"]["delivery_status"] == "stored"
        assert (await client.post("/api/partners/webhook", json={"event_type": "x"})).status_code == 401
