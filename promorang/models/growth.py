from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, Integer, DateTime, ForeignKey, Numeric, Text
from sqlalchemy.orm import Mapped, mapped_column

from promorang.db import Base


class Stake(Base):
    __tablename__ = "stakes"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    channel_name: Mapped[str] = mapped_column(String(32))
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2))
    lock_period_days: Mapped[int] = mapped_column(Integer)
    base_multiplier: Mapped[Decimal] = mapped_column(Numeric(6, 2))
    status: Mapped[str] = mapped_column(String(16), default="active", index=True)  # active/completed
    started_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "channel_name": self.channel_name,
            "amount": float(self.amount),
            "lock_period_days": self.lock_period_days,
            "multiplier": float(self.base_multiplier),
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class FundingProject(Base):
    __tablename__ = "funding_projects"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    creator_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    title: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    funding_goal: Mapped[Decimal] = mapped_column(Numeric(18, 2))
    funded_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))
    duration_days: Mapped[int] = mapped_column(Integer, default=30)
    status: Mapped[str] = mapped_column(String(16), default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "creator_id": self.creator_id,
            "title": self.title,
            "description": self.description,
            "funding_goal": float(self.funding_goal),
            "funded_amount": float(self.funded_amount),
            "duration_days": self.duration_days,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "ends_at": self.ends_at.isoformat() if self.ends_at else None,
        }
