from __future__ import annotations

from datetime import datetime

from sqlalchemy import String, Integer, DateTime, ForeignKey, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from promorang.db import Base


class Drop(Base):
    __tablename__ = "drops"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    creator_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    title: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    drop_type: Mapped[str] = mapped_column(String(32), default="proof_of_work")  # proof_of_work/paid_promotion
    difficulty: Mapped[str | None] = mapped_column(String(16), nullable=True)  # easy/medium/hard
    platform: Mapped[str | None] = mapped_column(String(32), nullable=True)
    content_url: Mapped[str | None] = mapped_column(String(512), nullable=True)

    reward_points: Mapped[int] = mapped_column(Integer, default=0)
    reward_keys: Mapped[int] = mapped_column(Integer, default=0)
    reward_gems: Mapped[int] = mapped_column(Integer, default=0)

    max_participants: Mapped[int | None] = mapped_column(Integer, nullable=True)
    deadline_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="active", index=True)  # active/completed/expired
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "creator_id": self.creator_id,
            "title": self.title,
            "description": self.description,
            "drop_type": self.drop_type,
            "difficulty": self.difficulty,
            "platform": self.platform,
            "content_url": self.content_url,
            "reward_points": self.reward_points,
            "reward_keys": self.reward_keys,
            "reward_gems": self.reward_gems,
            "max_participants": self.max_participants,
            "deadline_at": self.deadline_at.isoformat() if self.deadline_at else None,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
        }


class DropApplication(Base):
    __tablename__ = "drop_applications"
    __table_args__ = (
        UniqueConstraint("drop_id", "user_id", name="uq_drop_application_user"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    drop_id: Mapped[int] = mapped_column(ForeignKey("drops.id"), index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    submission_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)  # pending/approved/rejected
    submitted_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "drop_id": self.drop_id,
            "user_id": self.user_id,
            "submission_url": self.submission_url,
            "status": self.status,
            "submitted_at": self.submitted_at.isoformat(),
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
        }
