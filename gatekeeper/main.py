from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Optional

from aiohttp import web
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.ext.asyncio import AsyncEngine

from gatekeeper.config import Cfg, load_config
from gatekeeper.core import db as dal
from gatekeeper.core.runtime import Services, build_services
from gatekeeper.core.scheduler import build_scheduler, register_jobs
from gatekeeper.web.routes import create_app


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


@dataclass
class AppContext:
    cfg: Cfg
    engine: AsyncEngine
    services: Services
    scheduler: AsyncIOScheduler
    runner: Optional[web.AppRunner] = None


def setup_logging(cfg: Cfg) -> None:
    level = logging.DEBUG if cfg.debug else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING if not cfg.debug else logging.INFO)


async def init_database(cfg: Cfg) -> AsyncEngine:
    engine = dal.build_engine(cfg.pg)
    await dal.init_db(engine, cfg.pg)
    logging.info("Database connection established")
    return engine


async def start_scheduler(ctx: AppContext) -> None:
    register_jobs(ctx.scheduler, ctx.services.sweeper, ctx.cfg.sweep)
    ctx.scheduler.start()
    logging.info("Scheduler started, sweeps every %s min", ctx.cfg.sweep.interval_minutes)
    restored = await ctx.services.overrides.recover()
    if restored:
        logging.info("Restored overdue device limits for %s accounts", len(restored))


async def start_http(ctx: AppContext) -> None:
    runner = web.AppRunner(create_app(ctx.services))
    await runner.setup()
    site = web.TCPSite(runner, ctx.cfg.http.host, ctx.cfg.http.port)
    await site.start()
    ctx.runner = runner
    logging.info("Listening on %s:%s", ctx.cfg.http.host, ctx.cfg.http.port)


async def shutdown(ctx: AppContext) -> None:
    if ctx.runner is not None:
        await ctx.runner.cleanup()
    try:
        ctx.scheduler.shutdown(wait=False)
    except Exception:
        logging.exception("Error during scheduler shutdown")
    await ctx.engine.dispose()
    logging.info("Shutdown complete")


async def _main() -> None:
    cfg = load_config()
    setup_logging(cfg)
    logging.info("Starting gatekeeper")

    engine = await init_database(cfg)
    scheduler = build_scheduler()
    services = build_services(cfg, dal.build_sessionmaker(engine), scheduler=scheduler)
    ctx = AppContext(cfg=cfg, engine=engine, services=services, scheduler=scheduler)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _signal_handler(*_: object) -> None:
        logging.info("Received stop signal")
        stop_event.set()

    for sig in (signal.SIGINT, getattr(signal, "SIGTERM", signal.SIGINT)):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            signal.signal(sig, lambda *_: stop_event.set())

    try:
        await start_scheduler(ctx)
        await start_http(ctx)
        await stop_event.wait()
    finally:
        await shutdown(ctx)


def main() -> None:
    try:
        asyncio.run(_main())
    except (KeyboardInterrupt, SystemExit):
        pass


if __name__ == "__main__":
    main()
