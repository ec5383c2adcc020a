#!/usr/bin/env python3
"""Incremental review analysis job (cron).

Analyzes reviews that have no analysis for the current ANALYSIS_VERSION
(Gemini -> OpenAI -> heuristic) and refreshes the summaries of touched stores.
Bumping ANALYSIS_VERSION re-analyzes everything on the following runs.

Run (local / cron):
  python -m scripts.analyze_reviews

Optional env vars:
  ANALYSIS_BATCH_LIMIT=200   reviews per batch
  ANALYSIS_MAX_BATCHES=10    stop after this many batches
  ANALYSIS_FORCE=1           re-analyze regardless of version (single batch)
"""

import asyncio
import os
import sys

import httpx


# Ensure imports work when executed as a script/module
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from storetrust.services.analysis import build_default_chain  # noqa: E402
from storetrust.services.reviews import run_incremental_analysis_batch  # noqa: E402
from storetrust.settings import get_settings  # noqa: E402
from storetrust.stores.postgres import close_db, init_db, ping_db  # noqa: E402
from storetrust.stores.repository import open_repository  # noqa: E402


async def main() -> None:
    await init_db()
    await ping_db()

    settings = get_settings()
    batch_limit = int(os.getenv("ANALYSIS_BATCH_LIMIT", str(settings.analysis_batch_limit)))
    max_batches = int(os.getenv("ANALYSIS_MAX_BATCHES", "10"))
    force = os.getenv("ANALYSIS_FORCE", "").strip().lower() in ("1", "true", "yes")

    totals = {"batches": 0, "scanned": 0, "analyzed": 0, "failed": 0, "stores_refreshed": 0}
    providers: dict[str, int] = {}
    try:
        async with httpx.AsyncClient(timeout=30.0) as client:
            analyzer = build_default_chain(client)
            for _ in range(1 if force else max_batches):
                # One transaction per batch so progress survives a later failure.
                async with open_repository() as repo:
                    stats = await run_incremental_analysis_batch(repo, analyzer, limit=batch_limit, force=force)
                totals["batches"] += 1
                totals["scanned"] += stats.scanned
                totals["analyzed"] += stats.analyzed
                totals["failed"] += stats.failed
                totals["stores_refreshed"] += stats.stores_refreshed
                for name, count in stats.providers.items():
                    providers[name] = providers.get(name, 0) + count

                if stats.scanned < batch_limit or stats.analyzed == 0:
                    break

        print({"ok": True, **totals, "providers": providers})
    finally:
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
