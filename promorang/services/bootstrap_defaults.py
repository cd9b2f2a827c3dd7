from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from promorang.core.settings import settings
from promorang.models.admin import Admin
from promorang.models.automations import CronJob
from promorang.models.config import AppConfig, ConversionRule, TierMultiplier, StakeChannel
from promorang.services.security import hash_password, verify_password

logger = logging.getLogger(__name__)

DEFAULT_APP_CONFIG = {
    "signup_bonus_points": "100",
    "min_withdrawal_gems": "50",
}

DEFAULT_TIER_MULTIPLIERS = {
    "free": Decimal("1.0"),
    "premium": Decimal("1.5"),
    "super": Decimal("2.0"),
}

# 名称: (锁仓天数, 收益倍数)
DEFAULT_STAKE_CHANNELS = {
    "LowRisk": (7, Decimal("1.2")),
    "MediumRisk": (14, Decimal("1.5")),
    "HighRisk": (30, Decimal("2.0")),
}


async def ensure_default_configs(db: AsyncSession) -> None:
    for key, value in DEFAULT_APP_CONFIG.items():
        cfg = (await db.execute(select(AppConfig).where(AppConfig.key == key))).scalar_one_or_none()
        if not cfg:
            db.add(AppConfig(key=key, value=value))

    # 默认兑换规则：500 积分 = 1 钥匙，每日最多 3 把
    rule = (await db.execute(select(ConversionRule).limit(1))).scalar_one_or_none()
    if not rule:
        db.add(ConversionRule(from_currency="points", to_currency="keys", rate=500, daily_limit=3, version=1, enabled=True))

    for tier, multiplier in DEFAULT_TIER_MULTIPLIERS.items():
        row = (await db.execute(select(TierMultiplier).where(TierMultiplier.tier == tier))).scalar_one_or_none()
        if not row:
            db.add(TierMultiplier(tier=tier, multiplier=multiplier))

    for name, (lock_days, multiplier) in DEFAULT_STAKE_CHANNELS.items():
        row = (await db.execute(select(StakeChannel).where(StakeChannel.name == name))).scalar_one_or_none()
        if not row:
            db.add(StakeChannel(name=name, lock_period_days=lock_days, multiplier=multiplier, enabled=True))

    # 延迟导入：automations_service 经 settlement_service 间接依赖本模块
    from promorang.services.automations_service import JOBS

    for job_name in JOBS:
        if not await db.get(CronJob, job_name):
            db.add(CronJob(job_name=job_name, enabled=True, status="idle"))


async def ensure_default_admin(db: AsyncSession) -> None:
    admin = (await db.execute(select(Admin).where(Admin.username == settings.DEFAULT_ADMIN_USERNAME))).scalar_one_or_none()
    if not admin:
        logger.info("creating default admin %s", settings.DEFAULT_ADMIN_USERNAME)
        db.add(Admin(username=settings.DEFAULT_ADMIN_USERNAME,
                     password_hash=hash_password(settings.DEFAULT_ADMIN_PASSWORD)))
    elif verify_password(settings.DEFAULT_ADMIN_PASSWORD, admin.password_hash):
        logger.warning("admin %s still uses the default password", admin.username)
