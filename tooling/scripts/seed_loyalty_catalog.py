"""Seed, reset, or verify the stored loyalty tier and reward catalog."""

# meta: script: loyalty-catalog-seed

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage the loyalty tier and reward catalog")
    parser.add_argument(
        "command",
        choices=["init", "reset", "check"],
        help="init upserts defaults, reset wipes and reseeds, check reports drift from defaults.",
    )
    return parser.parse_args()


async def _run(command: str) -> int:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from agrimarket_api.db.session import async_session  # type: ignore import-position
    from agrimarket_api.services.loyalty.catalog_sync import (  # type: ignore import-position
        compare_with_defaults,
        seed_default_catalog,
    )

    async with async_session() as session:
        if command == "check":
            drift = await compare_with_defaults(session)
            if drift.clean:
                logger.success("Loyalty catalog matches defaults")
                return 0
            logger.warning(
                "Loyalty catalog drift detected",
                missing=drift.missing,
                changed=drift.changed,
                extra=drift.extra,
            )
            return 1

        summary = await seed_default_catalog(session, reset=command == "reset")
        logger.success(
            "Loyalty catalog seed complete",
            command=command,
            tiers_created=summary.tiers_created,
            tiers_updated=summary.tiers_updated,
            rewards_created=summary.rewards_created,
            rewards_updated=summary.rewards_updated,
        )
        return 0


def main() -> int:
    args = parse_args()
    return asyncio.run(_run(args.command))


if __name__ == "__main__":
    sys.exit(main())
