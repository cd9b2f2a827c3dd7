from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, DateTime, ForeignKey, Numeric
from sqlalchemy.orm import Mapped, mapped_column

from promorang.db import Base


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    payment_type: Mapped[str] = mapped_column(String(16))  # deposit/withdrawal
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2))  # 宝石数量
    status: Mapped[str] = mapped_column(String(16), default="pending")  # pending/completed/rejected

    provider: Mapped[str] = mapped_column(String(32), default="stripe")
    # Stripe Checkout Session ID
    provider_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True, index=True)
    checkout_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "payment_type": self.payment_type,
            "amount": float(self.amount),
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
