from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, Integer, Boolean, DateTime, Numeric
from sqlalchemy.orm import Mapped, mapped_column

from promorang.db import Base


class AppConfig(Base):
    __tablename__ = "app_config"
    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(String(255))
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class ConversionRule(Base):
    """兑换规则：每次修改新增一个 version，旧版本保留用于审计。"""

    __tablename__ = "conversion_rules"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    from_currency: Mapped[str] = mapped_column(String(16), index=True)
    to_currency: Mapped[str] = mapped_column(String(16), index=True)
    rate: Mapped[int] = mapped_column(Integer)  # 多少个 from 换 1 个 to
    daily_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)  # 每日最多换出的 to 数量
    version: Mapped[int] = mapped_column(Integer, default=1)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "from": self.from_currency,
            "to": self.to_currency,
            "rate": self.rate,
            "daily_limit": self.daily_limit,
            "version": self.version,
            "enabled": self.enabled,
        }


class TierMultiplier(Base):
    __tablename__ = "tier_multipliers"
    tier: Mapped[str] = mapped_column(String(16), primary_key=True)
    multiplier: Mapped[Decimal] = mapped_column(Numeric(6, 2), default=Decimal("1.0"))
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class StakeChannel(Base):
    __tablename__ = "stake_channels"
    name: Mapped[str] = mapped_column(String(32), primary_key=True)
    lock_period_days: Mapped[int] = mapped_column(Integer)
    multiplier: Mapped[Decimal] = mapped_column(Numeric(6, 2))
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
