from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, Integer, DateTime, ForeignKey, Numeric, Text
from sqlalchemy.orm import Mapped, mapped_column

from promorang.db import Base


class Content(Base):
    __tablename__ = "content"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    creator_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    title: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    platform: Mapped[str] = mapped_column(String(32))
    platform_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    media_url: Mapped[str | None] = mapped_column(String(512), nullable=True)

    share_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.01"))
    total_shares: Mapped[int] = mapped_column(Integer, default=100)
    shares_sold: Mapped[int] = mapped_column(Integer, default=0)

    status: Mapped[str] = mapped_column(String(16), default="active")  # pending/active/rejected/flagged
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "creator_id": self.creator_id,
            "title": self.title,
            "description": self.description,
            "platform": self.platform,
            "platform_url": self.platform_url,
            "media_url": self.media_url,
            "share_price": float(self.share_price),
            "total_shares": self.total_shares,
            "available_shares": self.total_shares - self.shares_sold,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
        }


class ContentShare(Base):
    __tablename__ = "content_shares"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    content_id: Mapped[int] = mapped_column(ForeignKey("content.id"), index=True)
    buyer_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    shares_count: Mapped[int] = mapped_column(Integer)
    price_each: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
