from fastapi import FastAPI, HTTPException, Query, Request, Depends, Header
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
from typing import Optional
from pydantic import ValidationError
from datetime import datetime, timezone

import httpx

from config_provider import DEFAULT_CONFIG, normalize_config
from dashboard import Dashboard
from events import EventManager
from models import (
    BandwidthRequest, BreakModeUpdate, BreakToggleRequest, DashboardConfig, EventType, FeedEvent,
    Preferences, WebhookConfig,
)
from config import settings, VERSION
from playback import HlsPlayerFactory
from poll_scheduler import PollScheduler
from redis_config import get_redis_config
from status_service import BreakStateService, ProviderError, StreamStatusService
from store import CONFIG_KEY, create_store

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {"Cache-Control": "no-cache, no-store, must-revalidate"}

store = create_store()
status_service = StreamStatusService(store)
break_service = BreakStateService(store)
event_manager = EventManager()
dashboard: Optional[Dashboard] = None
started_at = datetime.now(timezone.utc)


def create_engine_client() -> httpx.AsyncClient:
    """HTTP client the engine uses for config, status and break-state calls."""
    headers = {"X-API-Token": settings.API_TOKEN} if settings.API_TOKEN else None
    if settings.ENGINE_IN_PROCESS:
        return httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app),
            headers=headers,
            timeout=settings.STATUS_REQUEST_TIMEOUT,
        )
    return httpx.AsyncClient(
        headers=headers,
        timeout=settings.STATUS_REQUEST_TIMEOUT,
        follow_redirects=True,
    )


def create_dashboard(http_client: httpx.AsyncClient) -> Dashboard:
    return Dashboard(
        player_factory=HlsPlayerFactory(),
        scheduler=PollScheduler(),
        event_manager=event_manager,
        http_client=http_client,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    global dashboard
    # Startup
    logger.info("crew-dashboard starting up...")
    await store.connect()
    await event_manager.start()

    def log_event_handler(event: FeedEvent):
        """Simple event handler that logs all events"""
        logger.info(
            f"Event: {event.event_type.value} for feed {event.feed_index} at {event.timestamp}")

    event_manager.add_handler(log_event_handler)

    engine_client = None
    if settings.ENGINE_ENABLED:
        engine_client = create_engine_client()
        dashboard = create_dashboard(engine_client)
        await dashboard.start()
    else:
        logger.info("Dashboard engine disabled - serving API only")

    yield

    # Shutdown
    logger.info("crew-dashboard shutting down...")
    if dashboard is not None:
        await dashboard.aclose()
        dashboard = None
    if engine_client is not None:
        await engine_client.aclose()
    await event_manager.stop()
    await status_service.aclose()
    await store.disconnect()


app = FastAPI(
    title="crew-dashboard",
    version=VERSION,
    description="Live-event crew dashboard: multi-feed live detection, break mode and status API",
    lifespan=lifespan,
    root_path=settings.ROOT_PATH,
    docs_url=settings.DOCS_URL,
    redoc_url=settings.REDOC_URL,
    openapi_url=settings.OPENAPI_URL,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def verify_token(
    x_api_token: Optional[str] = Header(None, alias="X-API-Token"),
    api_token: Optional[str] = Query(
        None, description="API token (alternative to X-API-Token header)")
):
    """
    Verify the producer token if API_TOKEN is configured.
    Token can be provided via:
    - X-API-Token header (recommended)
    - api_token query parameter (for browser access or when headers are difficult)

    If API_TOKEN is not set in environment, authentication is disabled.
    """
    if not settings.API_TOKEN:
        return True

    provided_token = x_api_token or api_token

    if not provided_token:
        raise HTTPException(
            status_code=401,
            detail="API token required. Provide token via X-API-Token header or api_token query parameter.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if provided_token != settings.API_TOKEN:
        raise HTTPException(
            status_code=403,
            detail="Invalid API token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True


def get_dashboard() -> Dashboard:
    if dashboard is None:
        raise HTTPException(status_code=503, detail="Dashboard engine is not running")
    return dashboard


@app.get("/", dependencies=[Depends(verify_token)])
async def root():
    return {
        "status": "running",
        "message": "crew-dashboard is running",
        "version": VERSION,
        "uptime": (datetime.now(timezone.utc) - started_at).total_seconds(),
        "engine_enabled": dashboard is not None,
    }


@app.get("/health", dependencies=[Depends(verify_token)])
async def health_check():
    """Health check endpoint with engine status"""
    redis_config = get_redis_config()
    health = {
        "status": "healthy",
        "version": VERSION,
        "uptime_seconds": (datetime.now(timezone.utc) - started_at).total_seconds(),
        "store": "redis" if redis_config["enabled"] else "memory",
        "engine": None,
    }
    if dashboard is not None:
        snapshot = dashboard.snapshot()
        health["engine"] = {
            "feeds": snapshot["feed_count"],
            "phases": snapshot["phases"],
            "expired": snapshot["expired"],
            "error": snapshot["error"],
        }
        if snapshot["error"]:
            health["status"] = "degraded"
    return health


# Server-side endpoints consumed by the dashboard engine


@app.get("/api/config")
async def get_config():
    try:
        stored = await store.get_json(CONFIG_KEY)
    except Exception as e:
        logger.error(f"Error loading config: {e}")
        stored = None
    if not isinstance(stored, dict):
        stored = None
    try:
        return DashboardConfig.model_validate(stored or DEFAULT_CONFIG).public_dict()
    except ValidationError as e:
        logger.warning(f"Stored config does not validate, serving it as stored: {e}")
    config = dict(stored)
    config.pop("producerPassword", None)
    return config


@app.post("/api/config", dependencies=[Depends(verify_token)])
async def save_config(request: Request):
    try:
        config = DashboardConfig.model_validate(await request.json())
    except (ValueError, ValidationError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid configuration: {e}")

    try:
        await store.set_json(CONFIG_KEY, config.model_dump(mode="json", by_alias=True))
    except Exception as e:
        logger.error(f"Error saving config: {e}")
        raise HTTPException(status_code=500, detail="Failed to save")

    # Saving settings rebuilds the whole feed set
    if dashboard is not None:
        dashboard.rebuild(normalize_config(config))
    return {"success": True}


@app.get("/api/stream-status")
async def get_stream_status(liveStreamId: Optional[str] = Query(None)):
    if not liveStreamId:
        return JSONResponse(status_code=400, content={"error": "Missing liveStreamId parameter"})
    try:
        data = await status_service.get_status(liveStreamId)
    except ProviderError as e:
        return JSONResponse(
            status_code=e.status_code,
            content={"error": "Failed to fetch stream status", "details": e.details},
        )
    except Exception as e:
        logger.error(f"Stream status error for {liveStreamId}: {e}")
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "message": str(e)},
        )
    return JSONResponse(content=data, headers=NO_CACHE_HEADERS)


@app.get("/api/break-mode")
async def get_break_mode():
    try:
        state = await break_service.get_state()
    except Exception as e:
        logger.error(f"Break mode error: {e}")
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)},
                            headers=NO_CACHE_HEADERS)
    return JSONResponse(content={"success": True, "breakMode": state}, headers=NO_CACHE_HEADERS)


def _break_error(message: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message},
                        headers=NO_CACHE_HEADERS)


@app.post("/api/break-mode", dependencies=[Depends(verify_token)])
async def set_break_mode(request: Request):
    try:
        update = BreakModeUpdate.model_validate(await request.json())
    except (ValueError, ValidationError):
        return _break_error("Invalid request body")

    if update.stream_index is None or update.is_on_break is None:
        return _break_error("Missing streamIndex or isOnBreak parameter")
    if not 0 <= update.stream_index < break_service.feed_count:
        return _break_error(f"Invalid streamIndex. Must be 0-{break_service.feed_count - 1}.")
    if update.is_on_break and update.slot not in (1, 2):
        return _break_error("Missing or invalid slot. Must be 1 or 2 when going on break.")

    try:
        state = await break_service.set_break(
            update.stream_index, update.is_on_break, update.slot, update.updated_by)
    except Exception as e:
        logger.error(f"Break mode error: {e}")
        return _break_error(str(e), status_code=500)

    slot_msg = f" (Slot {update.slot})" if update.is_on_break else ""
    return JSONResponse(
        content={
            "success": True,
            "breakMode": state,
            "message": f"Stream {update.stream_index} is now "
                       f"{'ON BREAK' + slot_msg if update.is_on_break else 'LIVE'}",
        },
        headers=NO_CACHE_HEADERS,
    )


@app.post("/api/mux-webhook")
async def provider_webhook(request: Request):
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    logger.debug(f"Received provider webhook: {payload.get('type')}")
    _, message = await status_service.record_webhook(payload)
    return {"success": True, "message": message}


# Dashboard engine endpoints


@app.get("/dashboard")
async def get_dashboard_overview():
    engine = get_dashboard()
    snapshot = engine.snapshot()
    if snapshot["error"]:
        raise HTTPException(status_code=503, detail=snapshot["error"])
    snapshot.pop("feeds")
    return snapshot


@app.get("/dashboard/feeds")
async def list_feeds():
    return {"feeds": get_dashboard().snapshot()["feeds"]}


@app.get("/dashboard/feeds/{index}")
async def get_feed(index: int):
    machine = get_dashboard().feed(index)
    if machine is None:
        raise HTTPException(status_code=404, detail="Feed not found")
    return machine.state.to_dict()


@app.post("/dashboard/feeds/{index}/break", dependencies=[Depends(verify_token)])
async def toggle_break(index: int, request: BreakToggleRequest):
    engine = get_dashboard()
    if request.on_break and request.slot is None:
        raise HTTPException(status_code=400, detail="slot (1 or 2) is required when going on break")
    try:
        break_mode = await engine.set_break(index, request.on_break, request.slot)
    except IndexError:
        raise HTTPException(status_code=404, detail="Feed not found")
    return {
        "success": break_mode is not None,
        "saved": break_mode is not None,
        "feed": engine.feed(index).state.to_dict(),
        "break_mode": break_mode,
    }


@app.post("/dashboard/reload", dependencies=[Depends(verify_token)])
async def reload_dashboard():
    engine = get_dashboard()
    if not await engine.reload():
        raise HTTPException(status_code=500, detail="Failed to load configuration")
    return {"message": "Dashboard reloaded", "feeds": len(engine.machines)}


@app.get("/dashboard/preferences")
async def get_preferences():
    return get_dashboard().preferences


@app.put("/dashboard/preferences")
async def update_preferences(prefs: Preferences):
    engine = get_dashboard()
    try:
        engine.update_preferences(prefs)
    except OSError as e:
        logger.error(f"Error saving preferences: {e}")
        raise HTTPException(status_code=500, detail="Failed to save preferences")
    return engine.preferences


@app.put("/dashboard/bandwidth")
async def update_bandwidth(request: BandwidthRequest):
    engine = get_dashboard()
    prefs = engine.preferences.model_copy(update={"bandwidth": request.bandwidth})
    try:
        engine.update_preferences(prefs)
    except OSError as e:
        logger.error(f"Error saving preferences: {e}")
        raise HTTPException(status_code=500, detail="Failed to save preferences")
    return {"bandwidth": engine.bandwidth}


@app.get("/dashboard/events")
async def recent_events(
    feed: Optional[int] = Query(None, description="Only events for this feed index"),
    event_type: Optional[EventType] = Query(None),
    limit: int = Query(50, ge=1, le=200),
):
    """Recent feed transitions, newest first"""
    events = event_manager.recent(feed_index=feed, event_type=event_type, limit=limit)
    return {"events": [e.model_dump(mode="json") for e in events]}


# Webhook Management Endpoints


@app.post("/webhooks", dependencies=[Depends(verify_token)])
async def add_webhook(webhook: WebhookConfig):
    """Add a new webhook configuration"""
    event_manager.add_webhook(webhook)
    return {
        "message": "Webhook added successfully",
        "webhook_url": str(webhook.url),
        "events": [event.value for event in webhook.events],
        "feeds": webhook.feeds,
    }


@app.get("/webhooks", dependencies=[Depends(verify_token)])
async def list_webhooks():
    """List all configured webhooks"""
    webhooks = [
        {
            "url": str(wh.url),
            "events": [event.value for event in wh.events],
            "feeds": wh.feeds,
            "timeout": wh.timeout,
            "retry_attempts": wh.retry_attempts
        }
        for wh in event_manager.webhooks
    ]
    return {"webhooks": webhooks}


@app.delete("/webhooks", dependencies=[Depends(verify_token)])
async def remove_webhook(webhook_url: str = Query(..., description="Webhook URL to remove")):
    """Remove a webhook configuration"""
    if not event_manager.remove_webhook(webhook_url):
        raise HTTPException(status_code=404, detail="Webhook not found")
    return {"message": f"Webhook {webhook_url} removed successfully"}


@app.post("/webhooks/test", dependencies=[Depends(verify_token)])
async def test_webhook(webhook_url: str = Query(..., description="Webhook URL to test")):
    """Send a test event to a webhook"""
    for webhook in event_manager.webhooks:
        if str(webhook.url) == webhook_url:
            test_event = FeedEvent(
                event_type=EventType.FEED_LIVE,
                feed_index=0,
                data={"test": True, "message": "This is a test webhook event"}
            )
            delivered = await event_manager._send_webhook(webhook, test_event)
            return {
                "message": f"Test event sent to {webhook_url}",
                "delivered": delivered,
                "event_id": test_event.event_id
            }
    raise HTTPException(status_code=404, detail="Webhook not found")
