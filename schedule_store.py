#!/usr/bin/env python3

import fcntl
import json
import logging
import os
import random
import re
import string
import tempfile
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from pydantic import ValidationError

from models import Schedule, ScheduleInput, ScheduleUpdate

logger = logging.getLogger(__name__)

SCHEDULE_ID_PATTERN = re.compile(r"^schedule_\d+_[a-z0-9]+$")
_ID_ALPHABET = string.digits + string.ascii_lowercase

# One in-process lock per catalog file, shared by every store pointing at it
_path_locks: Dict[str, threading.Lock] = {}
_path_locks_guard = threading.Lock()


class ScheduleStoreError(RuntimeError):
    pass


def generate_id() -> str:
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"schedule_{int(time.time() * 1000)}_{suffix}"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def migrate_schedule(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Fill fields added after a record was written."""
    data = dict(raw)
    if data.get("ha_mode") is None:
        data["ha_mode"] = not data.get("target_url")

    dithering = data.get("dithering")
    if isinstance(dithering, bool):
        # Older records stored dithering as a plain on/off flag
        data["dithering"] = {"enabled": dithering, "normalize": True}
    elif isinstance(dithering, dict) and dithering.get("normalize") is None:
        data["dithering"] = {**dithering, "normalize": True}
    return data


def _path_lock(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _path_locks_guard:
        if key not in _path_locks:
            _path_locks[key] = threading.Lock()
        return _path_locks[key]


class ScheduleStore:
    """JSON-file schedule catalog. Every mutation is one exclusive read-modify-write."""

    def __init__(self, file_path: str):
        self.file_path = Path(file_path)
        self.lock_path = self.file_path.with_name(self.file_path.name + ".lock")

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        with _path_lock(self.file_path):
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.lock_path, 'a') as lock_file:
                fcntl.flock(lock_file, fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file, fcntl.LOCK_UN)

    def _read(self) -> List[Schedule]:
        """Parse the catalog file; raises on unreadable or malformed content."""
        if not self.file_path.exists():
            return []
        with open(self.file_path, 'r') as f:
            raw = json.load(f)
        if not isinstance(raw, list):
            raise ValueError(f"expected a JSON array, got {type(raw).__name__}")
        return [Schedule.model_validate(migrate_schedule(item)) for item in raw]

    def _write(self, schedules: List[Schedule]):
        data = [s.model_dump(mode="json", by_alias=True) for s in schedules]
        fd, tmp_path = tempfile.mkstemp(dir=self.file_path.parent, prefix=self.file_path.name, suffix=".tmp")
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.file_path)
        except OSError as e:
            Path(tmp_path).unlink(missing_ok=True)
            logger.error(f"Error saving schedules: {e}")
            raise ScheduleStoreError(f"Failed to save schedules to {self.file_path}: {e}")

    def _read_for_write(self) -> List[Schedule]:
        try:
            return self._read()
        except (OSError, ValueError, ValidationError) as e:
            raise ScheduleStoreError(f"Refusing to modify unreadable catalog {self.file_path}: {e}")

    def load(self) -> List[Schedule]:
        try:
            with self._exclusive():
                return self._read()
        except (OSError, ValueError, ValidationError) as e:
            logger.error(f"Error loading schedules from {self.file_path}: {e}")
            return []

    def get(self, schedule_id: str) -> Optional[Schedule]:
        return next((s for s in self.load() if s.id == schedule_id), None)

    def create(self, schedule: ScheduleInput) -> Schedule:
        try:
            with self._exclusive():
                schedules = self._read_for_write()
                now = utc_timestamp()
                data = migrate_schedule(schedule.model_dump())
                new_schedule = Schedule.model_validate({**data, "id": generate_id(),
                                                        "created_at": now, "updated_at": now})
                schedules.append(new_schedule)
                self._write(schedules)
        except OSError as e:
            raise ScheduleStoreError(f"Failed to lock {self.lock_path}: {e}")
        logger.info(f"Created schedule '{new_schedule.name}' (ID: {new_schedule.id})")
        return new_schedule

    def update(self, schedule_id: str, updates: ScheduleUpdate) -> Optional[Schedule]:
        """Merge the explicitly set fields into a schedule; None when the id is unknown."""
        try:
            with self._exclusive():
                schedules = self._read_for_write()
                index = next((i for i, s in enumerate(schedules) if s.id == schedule_id), None)
                if index is None:
                    return None
                merged = schedules[index].model_dump()
                merged.update(updates.model_dump(exclude_unset=True))
                merged["id"] = schedule_id
                merged["updated_at"] = max(utc_timestamp(), schedules[index].created_at)
                updated = Schedule.model_validate(merged)
                schedules[index] = updated
                self._write(schedules)
        except OSError as e:
            raise ScheduleStoreError(f"Failed to lock {self.lock_path}: {e}")
        logger.debug(f"Updated schedule {schedule_id}")
        return updated

    def update_byos_tokens(self, schedule_id: str, access_token: str, refresh_token: str,
                           obtained_at: int) -> bool:
        """Store refreshed BYOS tokens on the schedule as it is now on disk, leaving other fields alone.

        False when the schedule is gone or no longer has BYOS auth configured.
        """
        try:
            with self._exclusive():
                schedules = self._read_for_write()
                index = next((i for i, s in enumerate(schedules) if s.id == schedule_id), None)
                if index is None:
                    return False
                current = schedules[index]
                byos = current.webhook_format.byos_config if current.webhook_format else None
                if byos is None or byos.auth is None:
                    return False
                auth = byos.auth.model_copy(update={"access_token": access_token,
                                                    "refresh_token": refresh_token,
                                                    "obtained_at": obtained_at})
                webhook_format = current.webhook_format.model_copy(
                    update={"byos_config": byos.model_copy(update={"auth": auth})})
                updated_at = max(utc_timestamp(), current.created_at)
                schedules[index] = current.model_copy(update={"webhook_format": webhook_format,
                                                              "updated_at": updated_at})
                self._write(schedules)
        except OSError as e:
            raise ScheduleStoreError(f"Failed to lock {self.lock_path}: {e}")
        logger.debug(f"Stored refreshed BYOS tokens for schedule {schedule_id}")
        return True

    def delete(self, schedule_id: str) -> bool:
        try:
            with self._exclusive():
                schedules = self._read_for_write()
                remaining = [s for s in schedules if s.id != schedule_id]
                if len(remaining) == len(schedules):
                    return False
                self._write(remaining)
        except OSError as e:
            raise ScheduleStoreError(f"Failed to lock {self.lock_path}: {e}")
        logger.info(f"Deleted schedule {schedule_id}")
        return True
