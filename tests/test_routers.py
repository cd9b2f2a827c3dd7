import hashlib
import hmac
import json
import time
from decimal import Decimal

from promorang.core.settings import settings
from promorang.models.content import Content
from promorang.services.ledger_service import get_balance

from conftest import admin_headers, make_user, user_headers


async def test_health(client):
    resp = await client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "data": {"status": "ok"}}


class TestSessions:
    async def test_protected_route_requires_session(self, client):
        resp = await client.get("/api/economy/me")
        assert resp.status_code == 401
        assert resp.json()["ok"] is False
        assert resp.json()["error"]["code"] == "UNAUTHORIZED"

    async def test_invalid_token_rejected_on_protected_route(self, client):
        resp = await client.get("/api/economy/me", headers={"Authorization": "Bearer not-a-token"})
        assert resp.status_code == 401

    async def test_invalid_token_is_anonymous_on_public_route(self, client):
        resp = await client.get("/api/leaderboard/me", headers={"Authorization": "Bearer not-a-token"})
        assert resp.status_code == 200
        assert resp.json()["data"]["rank"] is None

    async def test_session_cookie_accepted(self, client, db):
        from promorang.services.security import issue_session_token

        user = await make_user(db, "alice")
        resp = await client.get(
            "/api/auth/me",
            headers={"Cookie": f"{settings.COOKIE_NAME}={issue_session_token(user.id)}"},
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["id"] == user.id


class TestEconomy:
    async def test_me_returns_balances(self, client, db):
        user = await make_user(db, "alice", points=250, gems=Decimal("3.5"))
        resp = await client.get("/api/economy/me", headers=user_headers(user.id))
        data = resp.json()["data"]
        assert data["points"] == 250
        assert data["gems"] == 3.5
        assert data["multiplier"] == 1.0

    async def test_convert(self, client, db):
        user = await make_user(db, "alice", points=1999)
        resp = await client.post(
            "/api/economy/convert",
            json={"from": "points", "to": "keys", "amount": 1999},
            headers=user_headers(user.id),
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert (data["converted"], data["cost"]) == (3, 1500)

        history = await client.get("/api/economy/transactions", headers=user_headers(user.id))
        assert history.json()["data"][0]["event_type"] == "convert"

    async def test_convert_errors(self, client, db):
        user = await make_user(db, "alice", points=499)
        headers = user_headers(user.id)

        resp = await client.post("/api/economy/convert", json={"from": "points", "to": "keys", "amount": 499},
                                 headers=headers)
        assert (resp.status_code, resp.json()["error"]["code"]) == (400, "BELOW_MINIMUM")

        resp = await client.post("/api/economy/convert", json={"from": "points", "to": "keys", "amount": -5},
                                 headers=headers)
        assert (resp.status_code, resp.json()["error"]["code"]) == (400, "BAD_REQUEST")

        resp = await client.post("/api/economy/convert", json={"from": "gold", "to": "gems", "amount": 5},
                                 headers=headers)
        assert resp.json()["error"]["code"] == "UNSUPPORTED_PAIR"

    async def test_idempotency_key_replay_conflicts(self, client, db):
        user = await make_user(db, "alice", points=1000)
        headers = {**user_headers(user.id), "Idempotency-Key": "convert-1"}
        body = {"from": "points", "to": "keys", "amount": 500}

        first = await client.post("/api/economy/convert", json=body, headers=headers)
        second = await client.post("/api/economy/convert", json=body, headers=headers)

        assert first.status_code == 200
        assert (second.status_code, second.json()["error"]["code"]) == (409, "CONFLICT")
        assert (await get_balance(db, user.id)).points == 500


class TestMarketplace:
    async def test_buy_shares_insufficient_funds(self, client, db):
        creator = await make_user(db, "creator")
        buyer = await make_user(db, "buyer", gems=100)
        created = await client.post(
            "/api/content",
            json={"title": "Clip", "platform": "tiktok", "total_shares": 100, "share_price": 1.5},
            headers=user_headers(creator.id),
        )
        assert created.status_code == 201
        content_id = created.json()["data"]["id"]

        resp = await client.post("/api/content/buy-shares", json={"content_id": content_id, "shares_count": 100},
                                 headers=user_headers(buyer.id))
        assert resp.status_code == 400
        assert resp.json() == {"ok": False, "error": {"code": "INSUFFICIENT_FUNDS", "message": "Not enough gems"}}

        content = await db.get(Content, content_id)
        assert content.shares_sold == 0

    async def test_drop_apply_twice(self, client, db):
        brand = await make_user(db, "brand")
        fan = await make_user(db, "fan")
        created = await client.post("/api/drops", json={"title": "Post about us", "reward_points": 10},
                                    headers=user_headers(brand.id))
        drop_id = created.json()["data"]["id"]

        first = await client.post(f"/api/drops/{drop_id}/apply", json={"submission_url": "https://x.test/1"},
                                  headers=user_headers(fan.id))
        second = await client.post(f"/api/drops/{drop_id}/apply", headers=user_headers(fan.id))

        assert first.status_code == 201
        assert (second.status_code, second.json()["error"]["code"]) == (409, "CONFLICT")
        mine = await client.get("/api/drops/applications/me", headers=user_headers(fan.id))
        assert len(mine.json()["data"]) == 1

    async def test_stake_channels_and_stake(self, client, db):
        user = await make_user(db, "staker", gems=20)
        channels = await client.get("/api/growth-hub/channels")
        assert [c["name"] for c in channels.json()["data"]] == ["LowRisk", "MediumRisk", "HighRisk"]

        resp = await client.post("/api/growth-hub/stake", json={"amount": 15, "channel_name": "MediumRisk"},
                                 headers=user_headers(user.id))
        assert resp.status_code == 200
        stakes = await client.get("/api/growth-hub/stakes", headers=user_headers(user.id))
        assert stakes.json()["data"][0]["channel_name"] == "MediumRisk"


class TestAdmin:
    async def test_admin_routes_require_admin_session(self, client, db):
        user = await make_user(db, "alice")
        resp = await client.get(f"/api/admin/ledger/{user.id}/reconcile", headers=user_headers(user.id))
        assert resp.status_code == 401

    async def test_login_sets_admin_cookie(self, client):
        bad = await client.post("/api/admin/login", json={"username": "admin", "password": "nope"})
        assert bad.status_code == 400

        resp = await client.post("/api/admin/login", json={
            "username": settings.DEFAULT_ADMIN_USERNAME,
            "password": settings.DEFAULT_ADMIN_PASSWORD,
        })
        assert resp.status_code == 200
        assert settings.ADMIN_COOKIE_NAME in resp.headers["set-cookie"]

    async def test_reverse_reward_and_reconcile(self, client, db, admin):
        user = await make_user(db, "alice", points=0)
        refill = await client.post(
            "/api/admin/balances/refill",
            json={"user_id": user.id, "currency": "points", "amount": 300, "note": "promo"},
            headers=admin_headers(admin.id),
        )
        entry_id = refill.json()["data"]["entry_id"]

        audit = await client.post("/api/admin/rewards/audit", json={"entry_id": entry_id, "action": "reverse"},
                                  headers=admin_headers(admin.id))
        assert audit.status_code == 200
        assert audit.json()["data"]["reversal_entry_id"]

        again = await client.post("/api/admin/rewards/audit", json={"entry_id": entry_id, "action": "reverse"},
                                  headers=admin_headers(admin.id))
        assert again.status_code == 409

        recon = await client.get(f"/api/admin/ledger/{user.id}/reconcile", headers=admin_headers(admin.id))
        data = recon.json()["data"]
        assert data["consistent"] is True
        assert data["balance"]["points"] == 0

    async def test_publish_conversion_rule(self, client, admin):
        resp = await client.post("/api/admin/config/conversion-rules",
                                 json={"from": "gems", "to": "gold", "rate": 100, "daily_limit": None},
                                 headers=admin_headers(admin.id))
        assert resp.status_code == 200
        assert resp.json()["data"]["version"] == 1
        rules = await client.get("/api/admin/config/conversion-rules", headers=admin_headers(admin.id))
        assert {(r["from"], r["to"]) for r in rules.json()["data"]} == {("points", "keys"), ("gems", "gold")}


async def test_stripe_webhook_credits_deposit(client, db, monkeypatch):
    from promorang.models.payments import Payment

    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_test")
    user = await make_user(db, "buyer", gems=0)
    db.add(Payment(user_id=user.id, payment_type="deposit", amount=Decimal("10"), status="pending",
                   provider="stripe", provider_session_id="cs_hook"))
    await db.commit()

    body = json.dumps({"type": "checkout.session.completed", "data": {"object": {"id": "cs_hook"}}}).encode()
    timestamp = int(time.time())
    digest = hmac.new(b"whsec_test", f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()

    resp = await client.post("/api/payments/webhook", content=body,
                             headers={"Stripe-Signature": f"t={timestamp},v1={digest}",
                                      "Content-Type": "application/json"})
    assert resp.json() == {"ok": True, "data": {"status": "processed"}}

    unsigned = await client.post("/api/payments/webhook", content=body)
    assert unsigned.status_code == 400
    assert (await get_balance(db, user.id)).gems == Decimal("10.00")


async def test_funding_projects(client, db):
    creator = await make_user(db, "founder")
    created = await client.post("/api/growth-hub/projects",
                                json={"title": "Indie film", "funding_goal": 500, "duration_days": 14},
                                headers=user_headers(creator.id))
    assert created.status_code == 201

    bad = await client.post("/api/growth-hub/projects",
                            json={"title": "Too long", "funding_goal": 500, "duration_days": 120},
                            headers=user_headers(creator.id))
    assert (bad.status_code, bad.json()["error"]["code"]) == (400, "BAD_REQUEST")

    listed = await client.get("/api/growth-hub/projects")
    projects = listed.json()["data"]
    assert [p["title"] for p in projects] == ["Indie film"]
    assert projects[0]["creator_name"] == "founder"
