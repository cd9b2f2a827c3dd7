"""Operational commands, run as ``python -m promorang.cli <command>``."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging

from promorang.core.logging_config import setup_logging
from promorang.core.settings import settings
from promorang.db import AsyncSessionLocal, init_db
from promorang.services.automations_service import JOBS, run_automation
from promorang.services.ledger_service import reconcile
from promorang.services.settlement_service import distribute_stake_rewards

logger = logging.getLogger("promorang.cli")


async def _distribute_stakes() -> dict:
    await init_db()
    async with AsyncSessionLocal() as session:
        return await distribute_stake_rewards(session)


async def _run_automation(job_name: str) -> dict:
    await init_db()
    async with AsyncSessionLocal() as session:
        return await run_automation(session, job_name)


async def _reconcile(user_id: str) -> dict:
    await init_db()
    async with AsyncSessionLocal() as session:
        result = await reconcile(session, user_id)
    return {"user_id": user_id, "balance": result.balance, "replayed": result.replayed,
            "consistent": result.consistent}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="promorang")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("distribute-stakes", help="pay out every matured stake")
    rec = sub.add_parser("reconcile", help="replay a user's ledger and compare with the balance row")
    rec.add_argument("user_id")
    job = sub.add_parser("run-automation", help="run a registered automation job and record its status")
    job.add_argument("job_name", choices=sorted(JOBS))
    args = parser.parse_args(argv)

    setup_logging(settings.LOG_LEVEL)
    if args.command == "distribute-stakes":
        result = asyncio.run(_distribute_stakes())
    elif args.command == "run-automation":
        result = asyncio.run(_run_automation(args.job_name))
    else:
        result = asyncio.run(_reconcile(args.user_id))
    print(json.dumps(result))
    if args.command == "reconcile" and not result["consistent"]:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
