#!/usr/bin/env python3
"""Nightly duplicate-store merge job (cron).

Behavior:
- Group stores by normalized identity key (name + loose address signature)
- Merge every group into its canonical store (reviews/analyses/user reviews
  re-pointed, derived caches dropped, summaries recomputed)
- Holds the Redis dedupe lock so only one batch runs at a time

Run (local / cron):
  python -m scripts.dedupe_stores

Optional env vars:
  DEDUPE_DRY_RUN=1          only report groups, write nothing
  MAX_GROUPS=500            cap groups handled in this run
"""

import asyncio
import os
import sys
from dataclasses import asdict


# Ensure imports work when executed as a script/module
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from storetrust.services.identity import DedupeInProgressError, dedupe_stores  # noqa: E402
from storetrust.stores.postgres import close_db, init_db, ping_db  # noqa: E402
from storetrust.stores.redis import close_redis, init_redis  # noqa: E402


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes")


async def main() -> None:
    await init_db()
    await ping_db()
    try:
        await init_redis()
    except Exception:
        # Runs unlocked without Redis (logged by dedupe_stores).
        pass

    try:
        max_groups_raw = os.getenv("MAX_GROUPS", "").strip()
        try:
            stats = await dedupe_stores(
                dry_run=_env_flag("DEDUPE_DRY_RUN"),
                max_groups=int(max_groups_raw) if max_groups_raw else None,
            )
        except DedupeInProgressError as e:
            print({"ok": False, "error": str(e)})
            return

        print({"ok": not stats.errors, **asdict(stats)})
    finally:
        await close_redis()
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
