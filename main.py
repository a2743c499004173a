#!/usr/bin/env python3
"""
crew-dashboard - Main Entry Point
Live-event crew dashboard service: per-feed live detection, break mode and
the status/break-state API the dashboard engine consumes.
"""

import asyncio
import logging
import os
import sys

import uvicorn

# Local modules live flat in src/
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from config import settings, VERSION  # noqa: E402
from redis_config import build_redis_url, should_use_redis  # noqa: E402

logger = logging.getLogger("crew-dashboard")


def install_uvloop() -> bool:
    try:
        import uvloop
    except ImportError:
        return False
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
    return True


def redis_reachable(redis_url: str) -> bool:
    import redis.asyncio as redis_async

    async def ping():
        client = redis_async.from_url(redis_url, decode_responses=True)
        try:
            await client.ping()
            return True
        except Exception as e:
            logger.debug(f"Redis ping failed: {e}")
            return False
        finally:
            await client.aclose()

    return asyncio.run(ping())


def log_startup(use_uvloop: bool):
    logger.info("=" * 60)
    logger.info(f"⚡️ Starting crew-dashboard v{VERSION} on {settings.HOST}:{settings.PORT}")
    logger.info("=" * 60)
    logger.info(f"ℹ️  Log level set to: {settings.LOG_LEVEL}")
    logger.info("✅ Event loop: " + ("uvloop" if use_uvloop else "asyncio (install uvloop for better performance)"))

    if settings.ENGINE_ENABLED:
        logger.info(
            f"✅ Dashboard engine enabled against {settings.DASHBOARD_API_URL}"
            f"{' (in-process)' if settings.ENGINE_IN_PROCESS else ''}: offline poll "
            f"{settings.OFFLINE_POLL_INTERVAL}s, liveness poll {settings.LIVENESS_POLL_INTERVAL}s, "
            f"break poll {settings.BREAK_POLL_INTERVAL}s")
    else:
        logger.info("ℹ️  Dashboard engine disabled - serving API only")

    if not settings.API_TOKEN:
        logger.warning("⚠️  API_TOKEN not set - producer endpoints are open")
    if not (settings.MUX_TOKEN_ID and settings.MUX_TOKEN_SECRET):
        logger.warning("⚠️  Provider credentials missing - /api/stream-status will answer 500")
    if settings.RELOAD:
        logger.info("🔄 Auto-reload is enabled.")


def main():
    use_uvloop = install_uvloop()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    log_startup(use_uvloop)

    if should_use_redis():
        redis_url = build_redis_url()
        if redis_reachable(redis_url):
            logger.info("✅ Redis reachable for the blob store")
        else:
            logger.warning(f"❌  Redis configured but ping failed for: {redis_url}; startup will fail")

    uvicorn.run(
        "api:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD,
        log_level=settings.LOG_LEVEL.lower(),
        loop="uvloop" if use_uvloop and not settings.RELOAD else "asyncio"
    )


if __name__ == "__main__":
    main()
