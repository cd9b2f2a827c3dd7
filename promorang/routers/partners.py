from __future__ import annotations

import time
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from promorang.core.errors import AppError, success
from promorang.db import get_db
from promorang.deps import require_partner, require_user
from promorang.models.partners import PartnerApp
from promorang.models.user import User
from promorang.services import partners_service
from promorang.services.config_service import list_rules, list_tiers

router = APIRouter(prefix="/api/partners", tags=["partners"])


class RegisterPartnerIn(BaseModel):
    app_name: str = Field(min_length=1, max_length=128)
    app_url: str = Field(min_length=1, max_length=512)
    app_description: str | None = Field(default=None, max_length=2000)
    webhook_url: str | None = Field(default=None, max_length=512)
    permissions: list[str] | None = None


class PartnerEventIn(BaseModel):
    event_type: str = Field(min_length=1, max_length=64)
    event_data: Any = None


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


@router.post("/register")
async def register(payload: RegisterPartnerIn, user: User = Depends(require_user), db: AsyncSession = Depends(get_db)):
    return success(await partners_service.register_partner(
        db,
        user.id,
        payload.app_name,
        payload.app_url,
        app_description=payload.app_description,
        webhook_url=payload.webhook_url,
        permissions=payload.permissions,
    ))


@router.get("/apps")
async def my_apps(user: User = Depends(require_user), db: AsyncSession = Depends(get_db)):
    return success([a.as_dict() for a in await partners_service.list_partner_apps(db, user.id)])


@router.get("/usage")
async def usage(user: User = Depends(require_user), db: AsyncSession = Depends(get_db)):
    return success(await partners_service.get_partner_usage(db, user.id))


@router.post("/validate")
async def validate(app: PartnerApp = Depends(require_partner), db: AsyncSession = Depends(get_db)):
    started = time.perf_counter()
    data = {"partner_id": app.partner_id, "app_name": app.app_name, "permissions": app.permission_list()}
    await partners_service.record_usage(db, app.id, "validate", 200, _elapsed_ms(started))
    return success(data)


@router.get("/economy")
async def economy(app: PartnerApp = Depends(require_partner), db: AsyncSession = Depends(get_db)):
    started = time.perf_counter()
    try:
        partners_service.require_permission(app, "read_economy")
        data = {
            "conversion_rules": [r.as_dict() for r in await list_rules(db) if r.enabled],
            "tiers": [{"tier": t.tier, "multiplier": float(t.multiplier)} for t in await list_tiers(db)],
        }
    except AppError as exc:
        await partners_service.record_usage(db, app.id, "economy", exc.status_code, _elapsed_ms(started))
        raise
    await partners_service.record_usage(db, app.id, "economy", 200, _elapsed_ms(started))
    return success(data)


@router.post("/webhook")
async def partner_webhook(payload: PartnerEventIn, app: PartnerApp = Depends(require_partner),
                          db: AsyncSession = Depends(get_db)):
    started = time.perf_counter()
    result = await partners_service.handle_partner_webhook(db, app, payload.event_type, payload.event_data)
    await partners_service.record_usage(db, app.id, "webhook", 200, _elapsed_ms(started))
    return success(result)
