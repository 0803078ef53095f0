#!/usr/bin/env python3

import asyncio
import logging
import re
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, TYPE_CHECKING

from croniter import croniter

from byos_auth import now_millis
from config import (
    SCHEDULER_CHECK_INTERVAL_S,
    SCHEDULER_IMAGE_SUFFIXES,
    SCHEDULER_MAX_RETRIES,
    SCHEDULER_RETENTION_MULTIPLIER,
    SCHEDULER_RETRY_DELAY_S,
    is_network_error,
)
from models import (
    CaptureRequest,
    CropRegion,
    ExecutionResult,
    Schedule,
    TokenResponse,
    WebhookResult,
)
from schedule_store import ScheduleStore, ScheduleStoreError
from webhook_delivery import WebhookError, upload_to_webhook

if TYPE_CHECKING:
    from capture_manager import CaptureManager

logger = logging.getLogger(__name__)

CaptureFunction = Callable[[CaptureRequest], bytes]


def build_request(schedule: Schedule) -> CaptureRequest:
    """Resolve a stored schedule into the request the capture manager runs."""
    crop = None
    if schedule.crop.enabled and schedule.crop.width > 0 and schedule.crop.height > 0:
        crop = CropRegion(x=schedule.crop.x, y=schedule.crop.y,
                          width=schedule.crop.width, height=schedule.crop.height)

    return CaptureRequest(
        page_path=schedule.dashboard_path if schedule.ha_mode else "/",
        target_url=None if schedule.ha_mode else schedule.target_url,
        viewport=schedule.viewport,
        extra_wait=schedule.wait,
        zoom=schedule.zoom,
        crop=crop,
        invert=schedule.invert,
        format=schedule.format,
        rotate=schedule.rotate,
        lang=schedule.lang,
        theme=schedule.theme,
        dark=schedule.dark,
        dithering=schedule.dithering if schedule.dithering.enabled else None,
    )


def capture_on_loop(manager: 'CaptureManager', loop: asyncio.AbstractEventLoop) -> CaptureFunction:
    """Adapt the async capture manager for callers on other threads."""
    def capture(request: CaptureRequest) -> bytes:
        future = asyncio.run_coroutine_threadsafe(manager.capture(request), loop)
        return future.result().image
    return capture


def safe_file_name(name: str) -> str:
    safe = "".join(c for c in name if c.isalnum() or c in (' ', '-', '_')).strip()
    return re.sub(r"\s+", "_", safe) or "schedule"


class ScheduleExecutor:
    def __init__(self, capture_fn: CaptureFunction, store: ScheduleStore, output_dir: str,
                 retry_delay_s: float = SCHEDULER_RETRY_DELAY_S,
                 sleep: Callable[[float], None] = time.sleep):
        self.capture_fn = capture_fn
        self.store = store
        self.output_dir = Path(output_dir)
        self.retry_delay_s = retry_delay_s
        self.sleep = sleep

    def call(self, schedule: Schedule) -> ExecutionResult:
        """Capture, save and deliver one schedule, retrying on network errors"""
        start = time.monotonic()
        logger.info(f"Running: {schedule.name}")

        for attempt in range(1, SCHEDULER_MAX_RETRIES + 1):
            try:
                result = self._execute_once(schedule)
                break
            except Exception as e:
                if is_network_error(e) and attempt < SCHEDULER_MAX_RETRIES:
                    logger.warning(f"Network error ({attempt}/{SCHEDULER_MAX_RETRIES}) for {schedule.name}: {e}")
                    logger.info(f"Retrying in {self.retry_delay_s}s")
                    self.sleep(self.retry_delay_s)
                    continue
                logger.error(f"Schedule '{schedule.name}' failed: {e}")
                return ExecutionResult(success=False, error=str(e))

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(f"Completed: {schedule.name} in {duration_ms}ms | saved: {result.saved_path} "
                    f"| webhook: {self._webhook_status(result.webhook)}")
        return result

    def _execute_once(self, schedule: Schedule) -> ExecutionResult:
        request = build_request(schedule)
        image = self.capture_fn(request)
        saved_path = self._save_and_prune(schedule, image, request.format.value)
        webhook = self._upload_if_configured(schedule, image, request.format.value)
        return ExecutionResult(success=True, saved_path=str(saved_path), webhook=webhook)

    def _save_and_prune(self, schedule: Schedule, image: bytes, fmt: str) -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        output_path = self.output_dir / f"{safe_file_name(schedule.name)}_{timestamp}.{fmt}"
        output_path.write_bytes(image)
        logger.info(f"Saved: {output_path}")

        enabled = sum(1 for s in self.store.load() if s.enabled)
        deleted = self.prune_output(max(1, enabled * SCHEDULER_RETENTION_MULTIPLIER))
        if deleted:
            logger.debug(f"Cleanup: deleted {deleted} old file(s)")
        return output_path

    def prune_output(self, max_files: int) -> int:
        """Delete the oldest images beyond max_files; returns how many were removed."""
        images: List[Path] = [p for p in self.output_dir.iterdir()
                              if p.is_file() and p.suffix.lower() in SCHEDULER_IMAGE_SUFFIXES]
        images.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        deleted = 0
        for old in images[max_files:]:
            try:
                old.unlink()
                deleted += 1
            except OSError as e:
                logger.warning(f"Could not delete {old}: {e}")
        return deleted

    def _persist_tokens(self, schedule: Schedule) -> Callable[[TokenResponse], None]:
        def on_refresh(tokens: TokenResponse):
            try:
                saved = self.store.update_byos_tokens(schedule.id, tokens.access_token,
                                                      tokens.refresh_token, now_millis())
            except ScheduleStoreError as e:
                logger.error(f"Could not save refreshed tokens for '{schedule.name}': {e}")
                return
            if saved:
                logger.info(f"Saved refreshed BYOS tokens for '{schedule.name}'")
            else:
                logger.warning(f"Schedule '{schedule.name}' no longer uses BYOS auth, refreshed tokens dropped")
        return on_refresh

    def _upload_if_configured(self, schedule: Schedule, image: bytes, fmt: str) -> Optional[WebhookResult]:
        if not schedule.webhook_url:
            return None

        try:
            result = upload_to_webhook(
                schedule.webhook_url,
                image,
                fmt,
                webhook_headers=schedule.webhook_headers,
                webhook_format=schedule.webhook_format,
                on_token_refresh=self._persist_tokens(schedule),
            )
        except (WebhookError, OSError, ValueError) as e:
            logger.error(f"Schedule '{schedule.name}' webhook failed: {e}")
            return WebhookResult(attempted=True, success=False, error=str(e), url=schedule.webhook_url,
                                 status_code=getattr(e, "status_code", None))

        logger.info(f"Schedule '{schedule.name}' webhook success: {result.status} {result.status_text}")
        return WebhookResult(attempted=True, success=True, status_code=result.status, url=schedule.webhook_url)

    @staticmethod
    def _webhook_status(webhook: Optional[WebhookResult]) -> str:
        if webhook is None:
            return "not configured"
        if webhook.success:
            return f"{webhook.status_code} OK -> {webhook.url}"
        return f"FAILED ({webhook.error}) -> {webhook.url}"


class CaptureScheduler:
    def __init__(self, store: ScheduleStore, executor: ScheduleExecutor,
                 check_interval_s: float = SCHEDULER_CHECK_INTERVAL_S):
        self.store = store
        self.executor = executor
        self.check_interval_s = check_interval_s
        self.scheduler_thread = None
        self.scheduler_stop_event = threading.Event()
        self.last_check: Optional[datetime] = None
        self.last_results: Dict[str, ExecutionResult] = {}

    def start(self):
        """Start background scheduler thread"""
        if self.scheduler_thread and self.scheduler_thread.is_alive():
            return

        self.scheduler_stop_event.clear()
        self.last_check = datetime.now()
        self.scheduler_thread = threading.Thread(target=self._scheduler_loop, name="capture-scheduler")
        self.scheduler_thread.daemon = True
        self.scheduler_thread.start()
        logger.info("Scheduler started")

    def stop(self):
        """Stop background scheduler thread"""
        if self.scheduler_thread:
            self.scheduler_stop_event.set()
            self.scheduler_thread.join(timeout=5.0)
            logger.info("Scheduler stopped")

    @property
    def is_running(self) -> bool:
        return bool(self.scheduler_thread and self.scheduler_thread.is_alive())

    def _scheduler_loop(self):
        """Main scheduler loop - wakes every check interval"""
        while not self.scheduler_stop_event.wait(self.check_interval_s):
            try:
                self.run_due(datetime.now())
            except Exception as e:
                logger.exception(f"Error in scheduler loop: {e}")

    def due_schedules(self, since: datetime, now: datetime) -> List[Schedule]:
        """Enabled schedules whose cron expression fired in (since, now]."""
        due = []
        for schedule in self.store.load():
            if not schedule.enabled:
                continue
            try:
                next_run = croniter(schedule.cron, since).get_next(datetime)
            except (ValueError, KeyError) as e:
                logger.error(f"Invalid cron expression '{schedule.cron}' for '{schedule.name}': {e}")
                continue
            if next_run <= now:
                due.append(schedule)
        return due

    def run_due(self, now: datetime) -> List[str]:
        since = self.last_check or now
        self.last_check = now
        fired = []
        for schedule in self.due_schedules(since, now):
            self.last_results[schedule.id] = self.executor.call(schedule)
            fired.append(schedule.id)
        return fired

    def execute_now(self, schedule_id: str) -> ExecutionResult:
        """Run one schedule immediately, regardless of its cron or enabled flag."""
        schedule = self.store.get(schedule_id)
        if schedule is None:
            raise KeyError(schedule_id)
        result = self.executor.call(schedule)
        self.last_results[schedule_id] = result
        return result
