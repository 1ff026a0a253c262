from __future__ import annotations

import argparse
import asyncio
import sys

from notifyrelay.core.logging import configure_logging
from notifyrelay.persistence.db import SessionLocal, engine
from notifyrelay.persistence.repos.templates import SqlTemplateStore
from notifyrelay.services.notifications.default_templates import seed_default_templates


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Seed default notification templates")
    parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Replace existing templates instead of only filling empty slots",
    )
    return parser


async def _seed(args: argparse.Namespace) -> int:
    seeded = await seed_default_templates(SqlTemplateStore(SessionLocal), overwrite=args.overwrite)
    await engine.dispose()
    print(f"seeded {seeded} templates")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_seed(args))
    except Exception as exc:  # noqa: BLE001 - surface seeding failures clearly
        print(f"seed_templates failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
