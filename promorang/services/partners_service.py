"""Partner apps: registration, API-key checks, usage stats and webhooks.

A partner registers with a user session and receives an API key exactly
once; only its sha256 digest is stored. Approved apps call the partner
endpoints with ``X-API-Key``. Outbound notifications are signed like Stripe
webhooks (``t=<unix>,v1=<hmac-sha256>``) with the app's webhook secret and
sent with the shared HTTP timeout.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import time
from datetime import datetime, timedelta

import httpx
from sqlalchemy import case, select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from promorang.core.errors import BadRequest, Conflict, Forbidden, NotFound, Unauthorized
from promorang.core.settings import settings
from promorang.db import atomic
from promorang.models.admin import AdminLog
from promorang.models.partners import PartnerApp, PartnerUsage, WebhookEvent

logger = logging.getLogger(__name__)

PARTNER_PERMISSIONS = ("read_economy", "read_content", "read_drops", "webhooks")
NOTIFY_EVENTS = ("content_created", "drop_completed", "staking_reward")
USAGE_WINDOW_DAYS = 30
REVIEW_STATUS = {"approve": "approved", "suspend": "suspended"}


def generate_api_key() -> str:
    return f"pk_{secrets.token_urlsafe(24)}"


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode()).hexdigest()


def sign_webhook_payload(body: bytes, secret: str, timestamp: int) -> str:
    digest = hmac.new(secret.encode(), str(timestamp).encode() + b"." + body, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _check_url(value: str | None, field: str) -> None:
    if value and not value.startswith(("http://", "https://")):
        raise BadRequest(f"{field} must be an http(s) URL")


async def register_partner(
    db: AsyncSession,
    user_id: str,
    app_name: str,
    app_url: str,
    app_description: str | None = None,
    webhook_url: str | None = None,
    permissions: list[str] | None = None,
) -> dict:
    if not app_name or not app_name.strip() or not app_url:
        raise BadRequest("app_name and app_url are required")
    _check_url(app_url, "app_url")
    _check_url(webhook_url, "webhook_url")
    permissions = list(dict.fromkeys(permissions or ["read_economy"]))
    unknown = [p for p in permissions if p not in PARTNER_PERMISSIONS]
    if unknown:
        raise BadRequest(f"Unknown permissions: {', '.join(unknown)}")

    api_key = generate_api_key()
    webhook_secret = f"whsec_{secrets.token_hex(16)}"
    async with atomic(db):
        app = PartnerApp(
            partner_id=user_id,
            app_name=app_name.strip(),
            app_description=app_description,
            app_url=app_url,
            webhook_url=webhook_url,
            webhook_secret=webhook_secret,
            api_key_hash=hash_api_key(api_key),
            api_key_prefix=api_key[:10],
            permissions=json.dumps(permissions),
            status="pending",
        )
        db.add(app)
        await db.flush()

    logger.info("user %s registered partner app %s (%s)", user_id, app.id, app.app_name)
    # 明文 key 与 secret 只在这里返回一次
    return {"partner_app": app.as_dict(), "api_key": api_key, "webhook_secret": webhook_secret}


async def list_partner_apps(db: AsyncSession, user_id: str) -> list[PartnerApp]:
    return list((await db.execute(
        select(PartnerApp).where(PartnerApp.partner_id == user_id).order_by(PartnerApp.created_at.desc())
    )).scalars().all())


async def validate_partner_api_key(db: AsyncSession, api_key: str | None) -> PartnerApp:
    if not api_key:
        raise Unauthorized("API key required")
    app = (await db.execute(
        select(PartnerApp).where(PartnerApp.api_key_hash == hash_api_key(api_key), PartnerApp.status == "approved")
    )).scalar_one_or_none()
    if not app:
        raise Unauthorized("Invalid API key")
    return app


def require_permission(app: PartnerApp, permission: str) -> None:
    if permission not in app.permission_list():
        raise Forbidden(f"Partner app lacks the {permission} permission")


async def record_usage(db: AsyncSession, app_id: int, endpoint: str, status_code: int = 200,
                       response_time_ms: int | None = None) -> None:
    async with atomic(db):
        db.add(PartnerUsage(
            partner_app_id=app_id,
            endpoint=endpoint,
            request_count=1,
            status_code=status_code,
            response_time_ms=response_time_ms,
        ))


async def get_partner_usage(db: AsyncSession, user_id: str, now: datetime | None = None) -> dict:
    """Request totals over the last 30 days across every app owned by ``user_id``."""
    since = (now or datetime.utcnow()).date() - timedelta(days=USAGE_WINDOW_DAYS)
    scope = (
        PartnerUsage.partner_app_id == PartnerApp.id,
        PartnerApp.partner_id == user_id,
        PartnerUsage.usage_date >= since,
    )
    total_requests = func.coalesce(func.sum(PartnerUsage.request_count), 0)
    rows = (await db.execute(
        select(
            PartnerUsage.endpoint,
            total_requests.label("total_requests"),
            func.avg(PartnerUsage.response_time_ms),
            func.count(case((PartnerUsage.status_code >= 400, 1))),
        )
        .where(*scope)
        .group_by(PartnerUsage.endpoint)
        .order_by(total_requests.desc())
    )).all()
    total = (await db.execute(
        select(total_requests, func.avg(PartnerUsage.response_time_ms)).where(*scope)
    )).one()

    def _avg(value):
        return round(float(value), 1) if value is not None else None

    return {
        "usage_by_endpoint": [
            {"endpoint": endpoint, "total_requests": int(requests), "avg_response_time": _avg(avg_ms),
             "error_count": int(errors)}
            for endpoint, requests, avg_ms, errors in rows
        ],
        "total_usage": {"total_requests": int(total[0]), "avg_response_time": _avg(total[1])},
        "period": f"{USAGE_WINDOW_DAYS} days",
    }


async def send_webhook_notification(db: AsyncSession, app: PartnerApp, event: WebhookEvent) -> str:
    """POST ``event`` to the app's webhook URL and record the delivery outcome."""
    if not app.webhook_url:
        status = "skipped"
    else:
        body = json.dumps({
            "event_type": event.event_type,
            "partner_id": app.partner_id,
            "event_data": json.loads(event.event_data) if event.event_data else None,
            "timestamp": datetime.utcnow().isoformat(),
        }).encode()
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "Promorang-Webhook/1.0",
            "X-Promorang-Signature": sign_webhook_payload(body, app.webhook_secret, int(time.time())),
        }
        try:
            async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as client:
                resp = await client.post(app.webhook_url, content=body, headers=headers)
            status = "delivered" if resp.is_success else "failed"
            if not resp.is_success:
                logger.warning("webhook %s to app %s got HTTP %s", event.id, app.id, resp.status_code)
        except httpx.TimeoutException:
            logger.warning("webhook %s to app %s timed out", event.id, app.id)
            status = "failed"
        except httpx.HTTPError as exc:
            logger.warning("webhook %s to app %s failed: %s", event.id, app.id, exc)
            status = "failed"

    async with atomic(db):
        await db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event.id)
            .values(
                delivery_status=status,
                delivery_attempts=WebhookEvent.delivery_attempts + (0 if status == "skipped" else 1),
                last_delivery_at=datetime.utcnow() if status != "skipped" else None,
            )
            .execution_options(synchronize_session=False)
        )
    return status


async def handle_partner_webhook(db: AsyncSession, app: PartnerApp, event_type: str, event_data) -> dict:
    """Store an event reported by a partner; known event types are echoed to its webhook."""
    if not event_type or not event_type.strip():
        raise BadRequest("event_type is required")
    event_type = event_type.strip()

    async with atomic(db):
        event = WebhookEvent(
            partner_app_id=app.id,
            event_type=event_type,
            event_data=json.dumps(event_data) if event_data is not None else None,
            webhook_url=app.webhook_url,
            delivery_status="pending" if event_type in NOTIFY_EVENTS else "stored",
        )
        db.add(event)
        await db.flush()

    # 网络请求放在事务之外
    status = event.delivery_status
    if event_type in NOTIFY_EVENTS:
        status = await send_webhook_notification(db, app, event)
    return {"processed": True, "event_id": event.id, "delivery_status": status}


async def list_webhook_events(db: AsyncSession, app_id: int, limit: int = 20) -> list[WebhookEvent]:
    return list((await db.execute(
        select(WebhookEvent)
        .where(WebhookEvent.partner_app_id == app_id)
        .order_by(WebhookEvent.created_at.desc(), WebhookEvent.id.desc())
        .limit(limit)
        .execution_options(populate_existing=True)
    )).scalars().all())


async def review_partner_app(db: AsyncSession, admin_id: int, app_id: int, action: str) -> PartnerApp:
    if action not in REVIEW_STATUS:
        raise BadRequest("Invalid action")
    app = await db.get(PartnerApp, app_id)
    if not app:
        raise NotFound("Partner app")
    new_status = REVIEW_STATUS[action]
    if app.status == new_status:
        raise Conflict(f"Partner app is already {new_status}")

    async with atomic(db):
        app.status = new_status
        db.add(AdminLog(
            admin_id=admin_id,
            action_type="partner_review",
            target_id=str(app_id),
            action_details=json.dumps({"action": action}),
        ))
    logger.info("admin %s set partner app %s to %s", admin_id, app_id, new_status)
    return app
