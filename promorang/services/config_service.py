from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

from promorang.core.errors import BadRequest
from promorang.models.config import AppConfig, ConversionRule, TierMultiplier, StakeChannel
from promorang.models.ledger import CURRENCIES
from promorang.services.bootstrap_defaults import DEFAULT_APP_CONFIG


async def get_int_config(db: AsyncSession, key: str) -> int:
    cfg = (await db.execute(select(AppConfig).where(AppConfig.key == key))).scalar_one_or_none()
    if cfg:
        return int(cfg.value)
    return int(DEFAULT_APP_CONFIG.get(key, 0))


async def set_int_config(db: AsyncSession, key: str, value: int) -> None:
    cfg = (await db.execute(select(AppConfig).where(AppConfig.key == key))).scalar_one_or_none()
    if not cfg:
        db.add(AppConfig(key=key, value=str(int(value))))
    else:
        cfg.value = str(int(value))
        cfg.updated_at = datetime.utcnow()
    await db.flush()


async def get_active_rule(db: AsyncSession, from_currency: str, to_currency: str) -> ConversionRule | None:
    """Latest enabled version of the rule for an ordered currency pair."""
    return (await db.execute(
        select(ConversionRule)
        .where(
            ConversionRule.from_currency == from_currency,
            ConversionRule.to_currency == to_currency,
            ConversionRule.enabled.is_(True),
        )
        .order_by(ConversionRule.version.desc())
        .limit(1)
    )).scalar_one_or_none()


async def list_rules(db: AsyncSession) -> list[ConversionRule]:
    return list((await db.execute(
        select(ConversionRule).order_by(ConversionRule.from_currency, ConversionRule.to_currency, ConversionRule.version)
    )).scalars().all())


async def publish_rule(
    db: AsyncSession,
    from_currency: str,
    to_currency: str,
    rate: int,
    daily_limit: int | None,
    enabled: bool = True,
) -> ConversionRule:
    """Add a new version of a pair's rule; earlier versions are kept but disabled."""
    if from_currency not in CURRENCIES or to_currency not in CURRENCIES:
        raise BadRequest("Unknown currency")
    if from_currency == to_currency:
        raise BadRequest("from and to must differ")
    if rate < 1:
        raise BadRequest("rate must be at least 1")
    current = (await db.execute(
        select(func.max(ConversionRule.version)).where(
            ConversionRule.from_currency == from_currency,
            ConversionRule.to_currency == to_currency,
        )
    )).scalar_one_or_none() or 0
    previous = (await db.execute(
        select(ConversionRule).where(
            ConversionRule.from_currency == from_currency,
            ConversionRule.to_currency == to_currency,
            ConversionRule.enabled.is_(True),
        )
    )).scalars().all()
    for old in previous:
        old.enabled = False
    rule = ConversionRule(
        from_currency=from_currency,
        to_currency=to_currency,
        rate=rate,
        daily_limit=daily_limit,
        version=current + 1,
        enabled=enabled,
    )
    db.add(rule)
    await db.flush()
    return rule


async def get_tier_multiplier(db: AsyncSession, tier: str | None) -> Decimal:
    row = (await db.execute(select(TierMultiplier).where(TierMultiplier.tier == (tier or "free")))).scalar_one_or_none()
    return Decimal(row.multiplier) if row else Decimal("1.0")


async def list_tiers(db: AsyncSession) -> list[TierMultiplier]:
    return list((await db.execute(select(TierMultiplier).order_by(TierMultiplier.multiplier))).scalars().all())


async def set_tier_multiplier(db: AsyncSession, tier: str, multiplier: Decimal) -> TierMultiplier:
    if multiplier <= 0:
        raise BadRequest("multiplier must be positive")
    row = (await db.execute(select(TierMultiplier).where(TierMultiplier.tier == tier))).scalar_one_or_none()
    if not row:
        row = TierMultiplier(tier=tier, multiplier=multiplier)
        db.add(row)
    else:
        row.multiplier = multiplier
        row.updated_at = datetime.utcnow()
    await db.flush()
    return row


async def get_stake_channel(db: AsyncSession, name: str) -> StakeChannel:
    channel = (await db.execute(select(StakeChannel).where(StakeChannel.name == name))).scalar_one_or_none()
    if not channel or not channel.enabled:
        raise BadRequest("Invalid channel name")
    return channel


async def list_stake_channels(db: AsyncSession) -> list[StakeChannel]:
    return list((await db.execute(
        select(StakeChannel).where(StakeChannel.enabled.is_(True)).order_by(StakeChannel.lock_period_days)
    )).scalars().all())
