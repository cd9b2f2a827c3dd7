from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from promorang.core.errors import BadRequest, success
from promorang.core.settings import settings
from promorang.db import get_db
from promorang.deps import require_admin
from promorang.models.admin import Admin
from promorang.services import admin_service, automations_service
from promorang.services.config_service import (
    get_int_config,
    list_rules,
    list_tiers,
    publish_rule,
    set_int_config,
    set_tier_multiplier,
)
from promorang.services.drops_service import review_application
from promorang.services.ledger_service import reconcile
from promorang.services.partners_service import review_partner_app
from promorang.services.security import hash_password, issue_admin_token, verify_password
from promorang.services.settlement_service import distribute_stake_rewards, review_withdrawal

router = APIRouter(prefix="/api/admin", tags=["admin"])

INT_CONFIG_KEYS = ("signup_bonus_points", "min_withdrawal_gems")


class AdminLoginIn(BaseModel):
    username: str
    password: str


class ChangePwdIn(BaseModel):
    old_password: str
    new_password: str = Field(min_length=6, max_length=128)


class ModerateIn(BaseModel):
    content_id: int
    action: str
    reason: str | None = Field(default=None, max_length=255)


class ReviewIn(BaseModel):
    action: str


class AuditIn(BaseModel):
    entry_id: str
    action: str
    notes: str | None = Field(default=None, max_length=255)


class RefillIn(BaseModel):
    user_id: str
    currency: str
    amount: Decimal = Field(allow_inf_nan=False)
    note: str | None = Field(default=None, max_length=255)


class ConversionRuleIn(BaseModel):
    from_currency: str = Field(alias="from")
    to_currency: str = Field(alias="to")
    rate: int = Field(ge=1)
    daily_limit: int | None = Field(default=None, ge=0)
    enabled: bool = True


class TierIn(BaseModel):
    multiplier: Decimal = Field(gt=0, allow_inf_nan=False)


class SetIntValue(BaseModel):
    value: int = Field(ge=0)


class CronJobIn(BaseModel):
    enabled: bool | None = None
    status: str | None = None
    next_run_at: datetime | None = None


@router.post("/login")
async def admin_login(payload: AdminLoginIn, response: Response, db: AsyncSession = Depends(get_db)):
    admin = (await db.execute(select(Admin).where(Admin.username == payload.username.strip()))).scalar_one_or_none()
    if not admin or not admin.is_active or not verify_password(payload.password, admin.password_hash):
        raise BadRequest("Invalid credentials")
    response.set_cookie(
        settings.ADMIN_COOKIE_NAME,
        issue_admin_token(admin.id),
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite=settings.COOKIE_SAMESITE,
        max_age=settings.SESSION_TTL_DAYS * 86400,
    )
    return success({"id": admin.id, "username": admin.username})


@router.post("/logout")
async def admin_logout(response: Response):
    response.delete_cookie(settings.ADMIN_COOKIE_NAME)
    return success({"logged_out": True})


@router.get("/me")
async def admin_me(admin: Admin = Depends(require_admin)):
    return success({"id": admin.id, "username": admin.username})


@router.post("/change-password")
async def change_password(payload: ChangePwdIn, admin: Admin = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    if not verify_password(payload.old_password, admin.password_hash):
        raise BadRequest("Wrong password")
    admin.password_hash = hash_password(payload.new_password)
    await db.flush()
    return success({"changed": True})


@router.get("/dashboard")
async def dashboard(admin: Admin = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    return success(await admin_service.dashboard(db, admin.id))


@router.post("/content/moderate")
async def moderate(payload: ModerateIn, admin: Admin = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    return success(await admin_service.moderate_content(db, admin.id, payload.content_id, payload.action, payload.reason))


@router.post("/drops/applications/{application_id}/review")
async def review_drop_application(application_id: int, payload: ReviewIn, admin: Admin = Depends(require_admin),
                                  db: AsyncSession = Depends(get_db)):
    return success(await review_application(db, admin.id, application_id, payload.action))


@router.post("/withdrawals/{payment_id}/review")
async def review_withdrawal_request(payment_id: int, payload: ReviewIn, admin: Admin = Depends(require_admin),
                                    db: AsyncSession = Depends(get_db)):
    payment = await review_withdrawal(db, admin.id, payment_id, payload.action)
    return success(payment.as_dict())


@router.post("/rewards/audit")
async def audit(payload: AuditIn, admin: Admin = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    return success(await admin_service.audit_reward(db, admin.id, payload.entry_id, payload.action, payload.notes))


@router.post("/balances/refill")
async def refill(payload: RefillIn, admin: Admin = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    return success(await admin_service.refill_balance(
        db, admin.id, payload.user_id, payload.currency, payload.amount, payload.note
    ))


@router.get("/ledger/{user_id}/reconcile")
async def reconcile_user(user_id: str, _: Admin = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    result = await reconcile(db, user_id)
    return success({"user_id": user_id, "balance": result.balance, "replayed": result.replayed,
                    "consistent": result.consistent})


@router.post("/stakes/distribute")
async def distribute(_: Admin = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    return success(await distribute_stake_rewards(db))


@router.post("/partners/{app_id}/review")
async def review_partner(app_id: int, payload: ReviewIn, admin: Admin = Depends(require_admin),
                         db: AsyncSession = Depends(get_db)):
    app = await review_partner_app(db, admin.id, app_id, payload.action)
    return success(app.as_dict())


@router.get("/automations")
async def automations(_: Admin = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    return success([j.as_dict() for j in await automations_service.list_cron_jobs(db)])


@router.put("/automations/{job_name}")
async def update_automation(job_name: str, payload: CronJobIn, _: Admin = Depends(require_admin),
                            db: AsyncSession = Depends(get_db)):
    job = await automations_service.update_cron_job(
        db, job_name, enabled=payload.enabled, status=payload.status, next_run_at=payload.next_run_at
    )
    return success(job.as_dict())


@router.post("/automations/{job_name}/run")
async def run_automation(job_name: str, _: Admin = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    return success(await automations_service.run_automation(db, job_name))


@router.get("/logs")
async def logs(
    action_type: str | None = Query(None, alias="type"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    _: Admin = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return success(await admin_service.list_logs(db, action_type=action_type, limit=limit, offset=offset))


@router.get("/config/conversion-rules")
async def get_conversion_rules(_: Admin = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    return success([r.as_dict() for r in await list_rules(db)])


@router.post("/config/conversion-rules")
async def post_conversion_rule(payload: ConversionRuleIn, _: Admin = Depends(require_admin),
                               db: AsyncSession = Depends(get_db)):
    rule = await publish_rule(
        db, payload.from_currency, payload.to_currency, payload.rate, payload.daily_limit, payload.enabled
    )
    return success(rule.as_dict())


@router.get("/config/tiers")
async def get_tiers(_: Admin = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    return success([{"tier": t.tier, "multiplier": float(t.multiplier)} for t in await list_tiers(db)])


@router.put("/config/tiers/{tier}")
async def put_tier(tier: str, payload: TierIn, _: Admin = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    row = await set_tier_multiplier(db, tier.strip(), payload.multiplier)
    return success({"tier": row.tier, "multiplier": float(row.multiplier)})


@router.get("/config/{key}")
async def get_config(key: str, _: Admin = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    if key not in INT_CONFIG_KEYS:
        raise BadRequest("Unknown config key")
    return success({"key": key, "value": await get_int_config(db, key)})


@router.put("/config/{key}")
async def set_config(key: str, payload: SetIntValue, _: Admin = Depends(require_admin),
                     db: AsyncSession = Depends(get_db)):
    if key not in INT_CONFIG_KEYS:
        raise BadRequest("Unknown config key")
    await set_int_config(db, key, payload.value)
    return success({"key": key, "value": payload.value})
