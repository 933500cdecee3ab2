from __future__ import annotations

import argparse
import asyncio
from typing import List, Optional, Sequence

from app.config import get_settings
from app.core.logging import configure_logging, get_logger
from app.core.request_id import with_run_id
from services.cache_orchestrator import CacheOrchestrator, RefreshResult, build_orchestrator

configure_logging(service_name="worker")
logger = get_logger().bind(worker="cache_refresh_bot")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="CacheRefreshBot: refresh cached content streams once.")
    parser.add_argument(
        "--key",
        action="append",
        dest="keys",
        default=None,
        help="Cache key to refresh (repeatable). Defaults to every configured key.",
    )
    return parser.parse_args(argv)


async def run_refresh(orchestrator: CacheOrchestrator, keys: Optional[List[str]]) -> int:
    selected = keys or orchestrator.keys
    unknown = [key for key in selected if key not in orchestrator.sources]
    if unknown:
        logger.error("cache_refresh_bot_unknown_keys", unknown=unknown, known=orchestrator.keys)
        return 1

    try:
        results: List[RefreshResult] = list(
            await asyncio.gather(*(orchestrator.refresh(key) for key in selected))
        )
    finally:
        await orchestrator.close()

    failed = [r.key for r in results if not r.committed]
    logger.info(
        "cache_refresh_bot_finished",
        refreshed=[r.key for r in results if r.committed],
        kept_previous=failed,
        items={r.key: r.items for r in results},
    )
    return 1 if failed else 0


async def main_async(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    with with_run_id():
        return await run_refresh(build_orchestrator(get_settings()), args.keys)


def main() -> None:
    exit_code = asyncio.run(main_async())
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
