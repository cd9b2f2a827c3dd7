from __future__ import annotations

import json
from datetime import date, datetime

from sqlalchemy import String, Integer, Text, Date, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from promorang.db import Base


class PartnerApp(Base):
    """第三方接入应用。API key 只存 sha256 摘要，明文仅在注册时返回一次。"""

    __tablename__ = "partner_apps"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    partner_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    app_name: Mapped[str] = mapped_column(String(128))
    app_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    app_url: Mapped[str] = mapped_column(String(512))
    webhook_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    webhook_secret: Mapped[str] = mapped_column(String(128))

    api_key_hash: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    api_key_prefix: Mapped[str] = mapped_column(String(16))
    permissions: Mapped[str] = mapped_column(Text, default='["read_economy"]')  # JSON 数组
    status: Mapped[str] = mapped_column(String(16), default="pending")  # pending/approved/suspended

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def permission_list(self) -> list[str]:
        return json.loads(self.permissions or "[]")

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "partner_id": self.partner_id,
            "app_name": self.app_name,
            "app_description": self.app_description,
            "app_url": self.app_url,
            "webhook_url": self.webhook_url,
            "api_key_prefix": self.api_key_prefix,
            "permissions": self.permission_list(),
            "status": self.status,
            "created_at": self.created_at.isoformat(),
        }


class PartnerUsage(Base):
    __tablename__ = "partner_usage"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    partner_app_id: Mapped[int] = mapped_column(ForeignKey("partner_apps.id"), index=True)
    endpoint: Mapped[str] = mapped_column(String(128))
    request_count: Mapped[int] = mapped_column(Integer, default=1)
    status_code: Mapped[int] = mapped_column(Integer, default=200)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    usage_date: Mapped[date] = mapped_column(Date, default=lambda: datetime.utcnow().date(), index=True)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    partner_app_id: Mapped[int] = mapped_column(ForeignKey("partner_apps.id"), index=True)
    event_type: Mapped[str] = mapped_column(String(64))
    event_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    webhook_url: Mapped[str | None] = mapped_column(String(512), nullable=True)

    # pending/delivered/failed/skipped/stored
    delivery_status: Mapped[str] = mapped_column(String(16), default="pending")
    delivery_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_delivery_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "delivery_status": self.delivery_status,
            "delivery_attempts": self.delivery_attempts,
            "last_delivery_at": self.last_delivery_at.isoformat() if self.last_delivery_at else None,
            "created_at": self.created_at.isoformat(),
        }
