#!/usr/bin/env python3
"""
Diagnose run lock state and provide recovery recommendations.

Usage:
    python scripts/diagnose_run_lock.py                 # comparison + all providers
    python scripts/diagnose_run_lock.py brackets:USD    # extra scopes to inspect
    python scripts/diagnose_run_lock.py --force SCOPE   # clear one lock
"""

import asyncio
from datetime import datetime
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from aggregator.db.models import Provider, SyncRun
from aggregator.db.session import AsyncSessionLocal
from aggregator.worker.run_lock import (
    COMPARISON_SCOPE,
    KEY_PREFIX,
    RunLockManager,
    lock_key,
    sync_scope,
)


async def diagnose(extra_scopes: list[str]) -> None:
    lock_manager = RunLockManager()

    async with AsyncSessionLocal() as db:
        result = await db.execute(select(Provider).order_by(Provider.id))
        providers = result.scalars().all()
        result = await db.execute(
            select(SyncRun).where(SyncRun.status == "running").order_by(SyncRun.started_at.desc())
        )
        running_runs = result.scalars().all()

    scopes = [COMPARISON_SCOPE] + [sync_scope(p.id) for p in providers] + extra_scopes

    print("Run Lock Diagnosis")
    print("==================")
    print(f"KEY_PREFIX: {KEY_PREFIX}")
    print("")

    held = {}
    for scope in scopes:
        info = await lock_manager.get_lock_info(scope)
        if not info:
            print(f"{lock_key(scope)}: none")
            continue
        held[scope] = info
        print(f"{lock_key(scope)}: present")
        print(f"  run_id: {info.get('run_id')}")
        print(f"  started_at: {info.get('started_at')}")
        print(f"  ttl_seconds: {info.get('ttl_seconds')}")
    print("")

    running_provider_ids = set()
    if not running_runs:
        print("Running SyncRuns: none")
    else:
        print(f"Running SyncRuns: {len(running_runs)}")
        for run in running_runs:
            running_provider_ids.add(run.provider_id)
            age_s = (datetime.utcnow() - run.started_at).total_seconds() if run.started_at else None
            age_display = f"{age_s:.0f}" if age_s is not None else "n/a"
            print(
                f"  - id={run.id} run_id={run.run_id} provider_id={run.provider_id} "
                f"started_at={run.started_at} age_s={age_display} trigger={run.trigger}"
            )

    print("")
    print("Recommendations")
    print("----------------")
    issues = False
    for scope, info in held.items():
        if info.get("ttl_seconds") is None:
            issues = True
            print(f"- {scope} lock has no TTL. Clear it with --force {scope}.")
    for provider in providers:
        scope = sync_scope(provider.id)
        if provider.id in running_provider_ids and scope not in held:
            issues = True
            print(
                f"- SyncRun for {provider.slug} is 'running' without a lock. "
                "The process that owned it probably died; the row can be marked failed."
            )
    if not issues:
        print("- No issues detected.")

    await lock_manager.close()


async def force(scope: str) -> None:
    lock_manager = RunLockManager()
    cleared = await lock_manager.force_unlock(scope)
    print(f"{lock_key(scope)}: {'cleared' if cleared else 'not present'}")
    await lock_manager.close()


if __name__ == "__main__":
    args = sys.argv[1:]
    if len(args) == 2 and args[0] == "--force":
        asyncio.run(force(args[1]))
    else:
        asyncio.run(diagnose(args))
