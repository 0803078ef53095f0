#!/usr/bin/env python3

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional, Set

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response
from playwright.async_api import Error as PlaywrightError
from pydantic import ValidationError
import uvicorn

from byos_auth import ByosAuthError, get_base_url, login, now_millis
from capture_manager import BrowserCrashError, CaptureManager, CaptureTimeoutError
from config import (
    AppConfig,
    COLOR_PALETTES,
    GRAYSCALE_PALETTES,
    MAX_NEXT_REQUESTS,
    PALETTE_LABELS,
    load_config,
)
from models import ByosLoginRequest, CaptureRequest, PaletteOption, ScheduleInput, ScheduleUpdate
from navigation import CannotOpenPageError
from params_parser import InvalidParamsError, parse_capture_params
from schedule_store import ScheduleStore, ScheduleStoreError
from scheduler import CaptureScheduler, ScheduleExecutor, capture_on_loop

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(debug: bool = False):
    logging.basicConfig(level=logging.DEBUG if debug else logging.INFO, format=LOG_FORMAT)


# Global service instances, created in lifespan
app_config: Optional[AppConfig] = None
capture_manager: Optional[CaptureManager] = None
schedule_store: Optional[ScheduleStore] = None
capture_scheduler: Optional[CaptureScheduler] = None
pending_prewarms: Set[asyncio.Task] = set()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    global app_config, capture_manager, schedule_store, capture_scheduler
    app_config = load_config()
    configure_logging(app_config.debug_logging)

    capture_manager = CaptureManager(app_config)
    schedule_store = ScheduleStore(app_config.schedules_file)
    executor = ScheduleExecutor(
        capture_on_loop(capture_manager, asyncio.get_running_loop()),
        schedule_store,
        app_config.output_dir,
    )
    capture_scheduler = CaptureScheduler(schedule_store, executor)
    capture_scheduler.start()
    logger.info(f"Capture service ready for {app_config.home_assistant_url}")

    yield

    # Shutdown
    capture_scheduler.stop()
    for task in list(pending_prewarms):
        task.cancel()
    await capture_manager.shutdown()
    logger.info("Capture service stopped")


app = FastAPI(
    title="E-ink Dashboard Capture API",
    description="Captures dashboards, quantizes them for e-ink panels and delivers them on a schedule",
    version="1.0.0",
    lifespan=lifespan
)


def _require(service, name: str):
    if service is None:
        raise HTTPException(status_code=500, detail=f"{name} not initialized")
    return service


@app.get("/health")
async def health():
    """Liveness plus browser and scheduler state"""
    return {
        "status": "ok",
        "browser_connected": bool(capture_manager and capture_manager.is_connected),
        "browser_busy": bool(capture_manager and capture_manager.is_busy),
        "scheduler_running": bool(capture_scheduler and capture_scheduler.is_running),
    }


@app.get("/api/palettes")
async def get_palettes():
    """List the grayscale and color palettes a schedule can target"""
    options = [PaletteOption(value=name, label=PALETTE_LABELS[name], levels=levels)
               for name, levels in GRAYSCALE_PALETTES.items()]
    options += [PaletteOption(value=name, label=PALETTE_LABELS[name], colors=colors)
                for name, colors in COLOR_PALETTES.items()]
    return [option.model_dump(exclude_none=True) for option in options]


@app.get("/api/schedules")
def list_schedules():
    store = _require(schedule_store, "Schedule store")
    return [s.model_dump(mode="json", by_alias=True) for s in store.load()]


@app.post("/api/schedules", status_code=201)
def create_schedule(schedule: ScheduleInput):
    store = _require(schedule_store, "Schedule store")
    try:
        created = store.create(schedule)
    except ScheduleStoreError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return created.model_dump(mode="json", by_alias=True)


@app.put("/api/schedules/{schedule_id}")
def update_schedule(schedule_id: str, updates: ScheduleUpdate):
    store = _require(schedule_store, "Schedule store")
    try:
        updated = store.update(schedule_id, updates)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ScheduleStoreError as e:
        raise HTTPException(status_code=500, detail=str(e))
    if updated is None:
        raise HTTPException(status_code=404, detail="Schedule not found")
    return updated.model_dump(mode="json", by_alias=True)


@app.delete("/api/schedules/{schedule_id}")
def delete_schedule(schedule_id: str):
    store = _require(schedule_store, "Schedule store")
    try:
        deleted = store.delete(schedule_id)
    except ScheduleStoreError as e:
        raise HTTPException(status_code=500, detail=str(e))
    if not deleted:
        raise HTTPException(status_code=404, detail="Schedule not found")
    return {"success": True}


@app.post("/api/schedules/{schedule_id}/send")
def send_schedule_now(schedule_id: str):
    """Run a schedule immediately and report the capture and webhook outcome"""
    scheduler = _require(capture_scheduler, "Scheduler")
    try:
        result = scheduler.execute_now(schedule_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Schedule not found")
    if not result.success:
        raise HTTPException(status_code=500, detail=result.error)
    return result.model_dump(exclude_none=True)


@app.post("/api/byos/login")
def byos_login(credentials: ByosLoginRequest):
    """Exchange BYOS credentials for tokens; the credentials themselves are not stored"""
    try:
        tokens = login(get_base_url(credentials.webhook_url), credentials.login, credentials.password)
    except ByosAuthError as e:
        raise HTTPException(status_code=401, detail=str(e))
    return {
        "access_token": tokens.access_token,
        "refresh_token": tokens.refresh_token,
        "obtained_at": now_millis(),
    }


def prewarm_delay_ms(next_seconds: int, request_ms: int, navigation_ms: int) -> int:
    """How long to wait before re-navigating so the page is fresh when the device asks again."""
    return next_seconds * 1000 - request_ms - navigation_ms - 1000


async def _prewarm_later(manager: CaptureManager, request: CaptureRequest, delay_ms: int):
    await asyncio.sleep(delay_ms / 1000)
    try:
        await manager.prewarm(request)
        logger.debug(f"Pre-warmed {request.target_url or request.page_path}")
    except (CannotOpenPageError, BrowserCrashError, CaptureTimeoutError, PlaywrightError) as e:
        logger.warning(f"Pre-warm navigation failed: {e}")


def schedule_prewarm(manager: CaptureManager, request: CaptureRequest, request_ms: int,
                     navigation_ms: int) -> Optional[asyncio.Task]:
    delay_ms = prewarm_delay_ms(request.next, request_ms, navigation_ms)
    if delay_ms < 0:
        logger.debug(f"Skipping pre-warm, next request due too soon ({request.next}s)")
        return None
    if len(pending_prewarms) >= MAX_NEXT_REQUESTS:
        logger.warning(f"Too many pending pre-warm requests ({len(pending_prewarms)}), skipping")
        return None
    task = asyncio.get_running_loop().create_task(_prewarm_later(manager, request, delay_ms))
    pending_prewarms.add(task)
    task.add_done_callback(pending_prewarms.discard)
    return task


@app.get("/{page_path:path}")
async def capture_page(page_path: str, request: Request):
    """Capture a dashboard path (or ?url=) and return the processed image"""
    if page_path == "favicon.ico":
        raise HTTPException(status_code=404, detail="Not found")
    manager = _require(capture_manager, "Capture manager")

    request_start = time.monotonic()
    try:
        capture_request = parse_capture_params(dict(request.query_params), f"/{page_path}")
    except InvalidParamsError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        result = await manager.capture(capture_request)
    except CannotOpenPageError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (BrowserCrashError, CaptureTimeoutError, PlaywrightError) as e:
        logger.error(f"Capture failed: {e}")
        raise HTTPException(status_code=503, detail=str(e))

    if capture_request.next is not None:
        request_ms = int((time.monotonic() - request_start) * 1000)
        schedule_prewarm(manager, capture_request, request_ms, result.navigation_ms)

    return Response(content=result.image, media_type=result.content_type)


if __name__ == "__main__":
    config = load_config()
    configure_logging(config.debug_logging)
    uvicorn.run(app, host="0.0.0.0", port=config.server_port)
