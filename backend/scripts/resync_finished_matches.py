#!/usr/bin/env python3
"""
Backfill timelines for finished matches that were stored without events.

Each match is re-fetched by id and reconciled again, two seconds apart to stay
under the provider's per-minute budget; a rate-limit response pauses the run
for a minute before moving on.

Usage:
  livefoot-resync [--limit N]
  python -m scripts.resync_finished_matches [--limit N]
"""
from __future__ import annotations

import argparse
import asyncio
import sys

from shared.config import get_settings
from shared.store.postgres import SqlMatchStore
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger, setup_logging
from shared.utils.redis_manager import RedisManager

from api.ws.manager import FanoutManager
from ingest.normalization.reconciler import FixtureReconciler
from ingest.providers.football_data import FootballDataGateway, build_http_client
from scheduler.service import MatchSyncService

logger = get_logger(__name__)


async def main(limit: int | None = None) -> int:
    settings = get_settings()
    setup_logging("resync")

    redis = RedisManager(settings)
    db = DatabaseManager(settings)
    http = build_http_client(settings)
    await redis.connect()
    await db.connect()
    await http.start()

    try:
        store = SqlMatchStore(db)
        gateway = FootballDataGateway(http, redis, settings)
        # Backfill never emits, so the fan-out is never started.
        service = MatchSyncService(
            gateway, FixtureReconciler(store, gateway), store, FanoutManager(settings), settings
        )
        summary = await service.resync_finished_matches(limit)
    except Exception as exc:
        logger.error("resync_aborted", error=str(exc), exc_info=True)
        return 1
    finally:
        await http.close()
        await db.disconnect()
        await redis.disconnect()

    logger.info("resync_summary", synced=summary.synced, failed=summary.errors)
    return 0


def run() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--limit", type=int, default=None, help="Process at most N matches")
    args = parser.parse_args()
    sys.exit(asyncio.run(main(args.limit)))


if __name__ == "__main__":
    run()
