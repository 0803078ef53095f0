#!/usr/bin/env python3

import json
import logging
import os
from pathlib import Path
from typing import Optional, Dict, Any, List

from pydantic import BaseModel

logger = logging.getLogger(__name__)


ADD_ON_OPTIONS_FILE = "/data/options.json"
OPTIONS_FILES = ["./options-dev.json", ADD_ON_OPTIONS_FILE]

# Image output
VALID_FORMATS = ("png", "jpeg", "bmp")
VALID_ROTATIONS = (90, 180, 270)
VALID_BIT_DEPTHS = (1, 2, 4, 8)
CONTENT_TYPES = {
    "png": "image/png",
    "jpeg": "image/jpeg",
    "bmp": "image/bmp",
}

# Palettes for e-ink panels
GRAYSCALE_PALETTES: Dict[str, int] = {
    "bw": 2,
    "gray-4": 4,
    "gray-16": 16,
    "gray-256": 256,
}

COLOR_PALETTES: Dict[str, List[str]] = {
    # Basic RGB + yellow + black/white
    "color-6a": ["#000000", "#FFFFFF", "#FF0000", "#00FF00", "#0000FF", "#FFFF00"],
    # ACeP with orange (Waveshare, Pimoroni Inky Impression)
    "color-7a": ["#000000", "#FFFFFF", "#FF0000", "#00FF00", "#0000FF", "#FFFF00", "#FF8C00"],
    # Cyan instead of orange
    "color-7b": ["#000000", "#FFFFFF", "#FF0000", "#00FF00", "#0000FF", "#FFFF00", "#00FFFF"],
    # Spectra 6 T2000, both cyan and orange
    "color-8a": ["#000000", "#FFFFFF", "#FF0000", "#00FF00", "#0000FF", "#FFFF00", "#00FFFF", "#FF8C00"],
}

PALETTE_LABELS = {
    "bw": "Black & White (1-bit)",
    "gray-4": "4 Grays (2-bit)",
    "gray-16": "16 Grays (4-bit)",
    "gray-256": "256 Grays (8-bit)",
    "color-6a": "6 Colors",
    "color-7a": "7 Colors (Orange)",
    "color-7b": "7 Colors (Cyan)",
    "color-8a": "8 Colors (Spectra 6)",
}

# Navigation timing (milliseconds)
DEFAULT_WAIT_TIME = 500
COLD_START_EXTRA_WAIT = 2500
LANGUAGE_SETTLE_MS = 1000
THEME_SETTLE_MS = 500

# Browser lifecycle
MAX_CAPTURES_BEFORE_RESTART = 100
MAX_NEXT_REQUESTS = 100

# Credentials: refresh 5 minutes before the 30 minute token expiry
ACCESS_TOKEN_VALIDITY_MS = 25 * 60 * 1000

# Scheduler
SCHEDULER_CHECK_INTERVAL_S = 30
SCHEDULER_MAX_RETRIES = 3
SCHEDULER_RETRY_DELAY_S = 5.0
SCHEDULER_RETENTION_MULTIPLIER = 2
SCHEDULER_IMAGE_SUFFIXES = (".png", ".jpeg", ".jpg", ".bmp")
RESPONSE_BODY_TRUNCATE_LENGTH = 200

NETWORK_ERROR_PATTERNS = (
    "econnrefused",
    "etimedout",
    "enotfound",
    "econnreset",
    "connection refused",
    "connection reset",
    "timed out",
    "name or service not known",
    "temporary failure in name resolution",
    "network is unreachable",
    "err_connection_refused",
    "err_connection_reset",
    "err_name_not_resolved",
    "err_timed_out",
    "err_internet_disconnected",
)


class OptionsParseError(ValueError):
    def __init__(self, file_path: str, cause: Exception):
        super().__init__(f"Failed to parse config file: {file_path}: {cause}")
        self.file_path = file_path
        self.cause = cause


class AppConfig(BaseModel):
    home_assistant_url: str = "http://localhost:8123"
    access_token: Optional[str] = None
    chromium_executable: Optional[str] = None
    keep_browser_open: bool = False
    debug_logging: bool = False
    schedules_file: str = "data/schedules.json"
    output_dir: str = "output"
    server_port: int = 10000
    browser_timeout_ms: int = 60000  # idle time before the browser is closed
    navigation_timeout_ms: int = 30000
    capture_timeout_ms: int = 60000
    refresh_timeout_s: float = 10.0


ENV_OVERRIDES = {
    "HOME_ASSISTANT_URL": ("home_assistant_url", str),
    "ACCESS_TOKEN": ("access_token", str),
    "CHROMIUM_EXECUTABLE": ("chromium_executable", str),
    "KEEP_BROWSER_OPEN": ("keep_browser_open", bool),
    "DEBUG_LOGGING": ("debug_logging", bool),
    "SCHEDULES_FILE": ("schedules_file", str),
    "OUTPUT_DIR": ("output_dir", str),
    "SERVER_PORT": ("server_port", int),
    "BROWSER_TIMEOUT": ("browser_timeout_ms", int),
}


def parse_options_file(file_path: str) -> Dict[str, Any]:
    try:
        with open(file_path, 'r') as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise OptionsParseError(file_path, e)


def find_options_file(candidates: Optional[List[str]] = None) -> Optional[str]:
    for candidate in candidates or OPTIONS_FILES:
        if Path(candidate).exists():
            return candidate
    return None


def load_config(env: Optional[Dict[str, str]] = None,
                options_file: Optional[str] = None) -> AppConfig:
    """Build the app config: defaults, then the options file, then env vars."""
    env = os.environ if env is None else env
    values: Dict[str, Any] = {}

    options_file = options_file or find_options_file()
    if options_file:
        file_values = parse_options_file(options_file)
        values.update({k: v for k, v in file_values.items() if k in AppConfig.model_fields})
        logger.info(f"Using options file {options_file}")

    for env_name, (field, kind) in ENV_OVERRIDES.items():
        raw = env.get(env_name)
        if raw is None:
            continue
        if kind is bool:
            values[field] = raw == "true"
        elif kind is int:
            try:
                values[field] = int(raw)
            except ValueError:
                logger.warning(f"Ignoring non-numeric {env_name}={raw!r}")
        else:
            values[field] = raw

    return AppConfig(**values)


def running_as_add_on() -> bool:
    """The supervisor mounts add-on options at /data/options.json."""
    return Path(ADD_ON_OPTIONS_FILE).exists()


def is_network_error(error: BaseException) -> bool:
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in NETWORK_ERROR_PATTERNS)
