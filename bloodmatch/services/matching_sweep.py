"""
matching_sweep.py
─────────────────
Periodic job that matches OPEN requests about to expire.

Cycle:
  1. Expiry pass (stale PENDING matches, expired requests)
  2. Find OPEN requests expiring within the sweep window (default 2h)
  3. Run matching for each, up to `sweep_concurrency` requests in flight
  4. Return a summary

One failing request never stops the cycle. There is no internal timeout;
the scheduler aborts a cycle if it needs to.

Schedule: every 5 minutes (cron / Kubernetes CronJob)

Usage:
  python -m bloodmatch.services.matching_sweep
  OR via the API: POST /v1/matching/sweep
"""
from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from bloodmatch.core.errors import BloodMatchError
from bloodmatch.scoring.engine import MatchEngine
from bloodmatch.services.collaborators import Datastore
from bloodmatch.services.match_lifecycle import MatchLifecycle

logger = structlog.get_logger(__name__)


async def run_sweep(
    datastore: Datastore,
    engine: MatchEngine,
    lifecycle: Optional[MatchLifecycle] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Full sweep cycle. `now` can be overridden for backfills and tests.
    """
    settings = engine.settings
    now = now or datetime.now(timezone.utc)
    started_at = datetime.now(timezone.utc)
    logger.info("matching_sweep_started", now=now.isoformat())

    # Step 1: Expiry pass
    expiry = {"expired_matches": 0, "expired_requests": 0}
    if lifecycle is not None:
        try:
            expiry = await lifecycle.expire_stale(now)
        except BloodMatchError as e:
            logger.error("expiry_pass_failed", error=str(e))

    # Step 2: Requests expiring soon
    horizon = now + timedelta(minutes=settings.sweep_window_minutes)
    requests = await datastore.find_open_requests_expiring(now, horizon)

    # Step 3: Match, bounded concurrency
    semaphore = asyncio.Semaphore(max(settings.sweep_concurrency, 1))

    async def process(request_id: str) -> tuple[int, int, Optional[str]]:
        async with semaphore:
            try:
                run = await engine.match(request_id, settings.sweep_match_limit)
                return len(run.matches), run.created, None
            except Exception as e:
                logger.error("sweep_request_failed", request_id=request_id, error=str(e))
                return 0, 0, str(e)

    outcomes = await asyncio.gather(*(process(r.id) for r in requests))

    elapsed = (datetime.now(timezone.utc) - started_at).total_seconds()
    result = {
        "requests_processed": len(outcomes),
        "requests_matched":   sum(1 for ranked, _, err in outcomes if ranked > 0 and err is None),
        "requests_unmatched": sum(1 for ranked, _, err in outcomes if ranked == 0 and err is None),
        "requests_failed":    sum(1 for _, _, err in outcomes if err is not None),
        "matches_created":    sum(created for _, created, _ in outcomes),
        **expiry,
        "elapsed_seconds":    round(elapsed, 2),
        "status":             "success",
    }
    logger.info("matching_sweep_complete", **result)
    return result


async def _main() -> dict:
    from bloodmatch.core.logging import configure_logging
    from bloodmatch.services.container import build_container

    configure_logging()
    container = build_container()
    try:
        return await run_sweep(container.datastore, container.match_engine, container.lifecycle)
    finally:
        await container.close()


if __name__ == "__main__":
    try:
        result = asyncio.run(_main())
        print(f"✓ Sweep complete: {result['requests_processed']} requests, "
              f"{result['matches_created']} matches ({result['elapsed_seconds']}s)")
    except Exception as e:
        print(f"✗ Sweep failed: {e}", file=sys.stderr)
        sys.exit(1)
