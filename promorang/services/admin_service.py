from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from promorang.core.errors import BadRequest, NotFound
from promorang.db import atomic
from promorang.models.admin import Admin, AdminLog
from promorang.models.content import Content
from promorang.models.drops import DropApplication
from promorang.models.ledger import LedgerEntry
from promorang.models.user import User
from promorang.services.ledger_service import TRANSFER_EVENTS, apply_entry, to_amount

logger = logging.getLogger(__name__)

MODERATION_STATUS = {"approve": "active", "reject": "rejected", "flag": "flagged"}


def _log(admin_id: int, action_type: str, target_id, details: dict) -> AdminLog:
    return AdminLog(
        admin_id=admin_id,
        action_type=action_type,
        target_id=str(target_id),
        action_details=json.dumps(details),
    )


async def moderate_content(db: AsyncSession, admin_id: int, content_id: int, action: str, reason: str | None) -> dict:
    if action not in MODERATION_STATUS:
        raise BadRequest("Invalid action")
    content = await db.get(Content, content_id)
    if not content:
        raise NotFound("Content")

    async with atomic(db):
        content.status = MODERATION_STATUS[action]
        db.add(_log(admin_id, "content_moderate", content_id, {"action": action, "reason": reason}))

    return {"content_id": content_id, "action": action, "new_status": content.status, "logged": True}


async def audit_reward(db: AsyncSession, admin_id: int, entry_id: str, action: str, notes: str | None) -> dict:
    """Verify, flag or reverse a ledger entry.

    Reversal writes a compensating entry, never an edit. Either leg of a
    ``transfer`` is refused: negating one side alone would mint or burn value.
    """
    if action not in ("verify", "flag", "reverse"):
        raise BadRequest("Invalid action")
    entry = await db.get(LedgerEntry, entry_id)
    if not entry:
        raise NotFound("Ledger entry")
    if action == "reverse" and entry.event_type in TRANSFER_EVENTS:
        # 单边冲正会凭空多出或少掉一方的余额
        raise BadRequest("Transfer entries cannot be reversed one-sided; refill both parties instead")

    reversal = None
    async with atomic(db):
        db.add(_log(admin_id, "reward_audit", entry_id, {"action": action, "notes": notes}))
        if action == "reverse":
            negated = {currency: -delta for currency, delta in entry.deltas().items() if delta}
            reversal = await apply_entry(
                db,
                entry.user_id,
                "reversal",
                negated,
                reference=f"reversal:{entry.id}",
                idempotency_key=f"reverse:{entry.id}",
            )

    logger.info("admin %s %s ledger entry %s", admin_id, action, entry_id)
    return {
        "entry_id": entry_id,
        "action": action,
        "logged": True,
        "reversal_entry_id": reversal.id if reversal else None,
    }


async def refill_balance(db: AsyncSession, admin_id: int, user_id: str, currency: str, amount, note: str | None) -> dict:
    user = await db.get(User, user_id)
    if not user:
        raise NotFound("User")
    amount = to_amount(currency, amount)
    if not amount:
        raise BadRequest("Amount must not be zero")

    async with atomic(db):
        entry = await apply_entry(db, user_id, "admin_refill", {currency: amount}, reference=note or "manual")
        db.add(_log(admin_id, "balance_refill", user_id, {"currency": currency, "amount": str(amount), "note": note}))

    logger.info("admin %s adjusted %s of user %s by %s", admin_id, currency, user_id, amount)
    return {"entry_id": entry.id, "user_id": user_id, "currency": currency, "amount": float(amount)}


async def list_logs(db: AsyncSession, action_type: str | None = None, limit: int = 50, offset: int = 0) -> list[dict]:
    stmt = select(AdminLog, Admin.username).join(Admin, AdminLog.admin_id == Admin.id)
    if action_type:
        stmt = stmt.where(AdminLog.action_type == action_type)
    rows = (await db.execute(
        stmt.order_by(AdminLog.created_at.desc(), AdminLog.id.desc()).limit(limit).offset(offset)
    )).all()
    return [
        {
            "id": log.id,
            "admin_id": log.admin_id,
            "admin_name": username,
            "action_type": log.action_type,
            "target_id": log.target_id,
            "action_details": json.loads(log.action_details) if log.action_details else None,
            "created_at": log.created_at.isoformat(),
        }
        for log, username in rows
    ]


async def dashboard(db: AsyncSession, admin_id: int) -> dict:
    pending_content = (await db.execute(select(func.count(Content.id)).where(Content.status == "pending"))).scalar_one()
    pending_drops = (await db.execute(
        select(func.count(DropApplication.id)).where(DropApplication.status == "pending")
    )).scalar_one()
    flagged = (await db.execute(select(func.count(Content.id)).where(Content.status == "flagged"))).scalar_one()
    since = datetime.utcnow() - timedelta(hours=24)
    recent = (await db.execute(
        select(AdminLog.action_type, func.count(AdminLog.id))
        .where(AdminLog.created_at >= since)
        .group_by(AdminLog.action_type)
    )).all()
    return {
        "pending_moderations": {
            "content": pending_content,
            "drops": pending_drops,
            "total": pending_content + pending_drops,
        },
        "flagged_content": flagged,
        "recent_actions": [{"action_type": a, "count": c} for a, c in recent],
        "admin_id": admin_id,
    }
