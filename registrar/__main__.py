"""
Command line entry point.

    python -m registrar scheduler [--once] [--local-browser]
    python -m registrar execute PLAN_ID [--local-browser]
    python -m registrar init-db
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys

from .app import build_components
from .config import EngineConfig
from .models import Caller
from .store.sql import SqlPlanStore

logger = logging.getLogger("registrar")


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="registrar", description="Plan execution engine")
    parser.add_argument("--log-level", default="INFO")
    sub = parser.add_subparsers(dest="command", required=True)

    sched = sub.add_parser("scheduler", help="run the scheduler loop")
    sched.add_argument("--once", action="store_true", help="run a single pass and wait for its attempts")
    sched.add_argument("--local-browser", action="store_true", help="use local Chromium instead of Browserbase")

    execute = sub.add_parser("execute", help="run one plan now as the service identity")
    execute.add_argument("plan_id")
    execute.add_argument("--local-browser", action="store_true")

    sub.add_parser("init-db", help="create database tables")
    return parser


async def _init_db(config: EngineConfig) -> int:
    store = SqlPlanStore.from_dsn(config.database_url)
    try:
        await store.create_all()
    finally:
        await store.dispose()
    logger.info("Database tables created")
    return 0


async def _execute(config: EngineConfig, plan_id: str, local_browser: bool) -> int:
    components = build_components(config, local_browser=local_browser)
    try:
        result = await components.runner.execute_plan(plan_id, Caller.service())
    finally:
        await components.close()
    print(json.dumps(result.model_dump(), indent=2, default=str))
    return 0 if result.ok else 1


async def _scheduler(config: EngineConfig, once: bool, local_browser: bool) -> int:
    components = build_components(config, local_browser=local_browser)
    scheduler = components.scheduler
    try:
        if once:
            report = await scheduler.run_once()
            await scheduler.drain()
            logger.info(f"Pass done: started={report.started} seeding={report.seeding} skipped={report.skipped}")
            return 0
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                pass
        await scheduler.run_forever(stop)
        return 0
    finally:
        await components.close()


def main(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    config = EngineConfig.from_env()

    if args.command == "init-db":
        return asyncio.run(_init_db(config))
    if args.command == "execute":
        return asyncio.run(_execute(config, args.plan_id, args.local_browser))
    return asyncio.run(_scheduler(config, args.once, args.local_browser))


if __name__ == "__main__":
    sys.exit(main())
