"""Deduct expired loyalty points once, outside the API scheduler.

Intended usage: cron on hosts that do not run the in-process scheduler, or a
manual sweep before reconciling balances.

Example:
    python tooling/scripts/run_expiration_sweep.py --batch-size 500
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sweep expired loyalty points once")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Maximum number of cards swept in this run (defaults to EXPIRATION_SWEEP_BATCH_SIZE).",
    )
    return parser.parse_args()


async def _run(batch_size: int | None) -> dict[str, object]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from cafe_loyalty_api.db.session import async_session, engine  # type: ignore import-position
    from cafe_loyalty_api.jobs.ledger import sweep_expired_points  # type: ignore import-position

    try:
        return await sweep_expired_points(session_factory=async_session, batch_size=batch_size)
    finally:
        await engine.dispose()


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.batch_size))
    logger.success(
        "Expiration sweep run completed",
        cards_swept=summary.get("cards_swept", 0),
        points_expired=summary.get("points_expired", 0),
        failures=summary.get("failures", 0),
    )
    return 1 if summary.get("failures") else 0


if __name__ == "__main__":
    sys.exit(main())
