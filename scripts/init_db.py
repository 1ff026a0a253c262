from __future__ import annotations

import asyncio
import sys

from notifyrelay.core.logging import configure_logging
from notifyrelay.persistence.db import create_schema, engine


async def _init() -> int:
    # Create any missing tables; existing tables are left untouched.
    await create_schema()
    await engine.dispose()
    print("notifyrelay schema ready")
    return 0


def main() -> int:
    configure_logging()
    try:
        return asyncio.run(_init())
    except Exception as exc:  # noqa: BLE001 - surface bootstrap failures clearly
        print(f"init_db failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
