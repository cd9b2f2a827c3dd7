from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Integer, ForeignKey, DateTime, String, Numeric, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column

from promorang.db import Base

CURRENCIES = ("points", "keys", "gems", "gold")


class Balance(Base):
    __tablename__ = "balances"
    __table_args__ = (
        CheckConstraint("points >= 0", name="chk_points_nonneg"),
        CheckConstraint("keys >= 0", name="chk_keys_nonneg"),
        CheckConstraint("gems >= 0", name="chk_gems_nonneg"),
        CheckConstraint("gold >= 0", name="chk_gold_nonneg"),
    )

    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), primary_key=True)
    points: Mapped[int] = mapped_column(Integer, default=0)
    keys: Mapped[int] = mapped_column(Integer, default=0)
    gems: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))
    gold: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def as_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "points": self.points,
            "keys": self.keys,
            "gems": float(self.gems),
            "gold": float(self.gold),
        }


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_ledger_user_idempotency_key"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    # convert/earn/spend/sale/purchase/withdraw/withdraw_reversal/stake/unstake/admin_refill/reversal
    event_type: Mapped[str] = mapped_column(String(32), index=True)

    delta_points: Mapped[int] = mapped_column(Integer, default=0)
    delta_keys: Mapped[int] = mapped_column(Integer, default=0)
    delta_gems: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))
    delta_gold: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))

    reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)

    def deltas(self) -> dict:
        return {
            "points": self.delta_points,
            "keys": self.delta_keys,
            "gems": self.delta_gems,
            "gold": self.delta_gold,
        }

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "event_type": self.event_type,
            "delta_points": self.delta_points,
            "delta_keys": self.delta_keys,
            "delta_gems": float(self.delta_gems),
            "delta_gold": float(self.delta_gold),
            "reference": self.reference,
            "created_at": self.created_at.isoformat(),
        }
