#!/usr/bin/env python3
"""Turns flat query-style capture parameters into a typed CaptureRequest.

Only the viewport is mandatory. Every other malformed field falls back to
its default instead of failing the request.
"""

import re
from typing import Mapping, Optional

from config import VALID_FORMATS, VALID_ROTATIONS, VALID_BIT_DEPTHS, GRAYSCALE_PALETTES, COLOR_PALETTES
from models import CaptureRequest, CropRegion, DitheringConfig, ImageFormat, Viewport

VIEWPORT_PATTERN = re.compile(r"(\d+)x(\d+)")
DITHER_METHODS = ("floyd-steinberg", "ordered", "threshold", "none")


class InvalidParamsError(ValueError):
    pass


def _int_param(params: Mapping[str, str], name: str) -> Optional[int]:
    value = params.get(name)
    if value is None or value == "":
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def _float_param(params: Mapping[str, str], name: str) -> Optional[float]:
    value = params.get(name)
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def parse_viewport(value: Optional[str]) -> Viewport:
    match = VIEWPORT_PATTERN.fullmatch((value or "").strip())
    if not match:
        raise InvalidParamsError(f"Invalid viewport {value!r}, expected WIDTHxHEIGHT")
    width, height = int(match.group(1)), int(match.group(2))
    if width <= 0 or height <= 0:
        raise InvalidParamsError(f"Viewport dimensions must be positive, got {value!r}")
    return Viewport(width=width, height=height)


def parse_crop(params: Mapping[str, str]) -> Optional[CropRegion]:
    """All four crop fields must be valid or the crop is dropped as a unit."""
    x = _int_param(params, "crop_x")
    y = _int_param(params, "crop_y")
    width = _int_param(params, "crop_width")
    height = _int_param(params, "crop_height")
    if None in (x, y, width, height) or width <= 0 or height <= 0:
        return None
    return CropRegion(x=x, y=y, width=width, height=height)


def _clamp_level(value: Optional[int], default: int) -> int:
    if value is None:
        return default
    return max(0, min(100, value))


def parse_dithering(params: Mapping[str, str]) -> Optional[DitheringConfig]:
    if "dithering" not in params:
        return None

    method = params.get("dither_method") or "floyd-steinberg"
    if method not in DITHER_METHODS:
        method = "floyd-steinberg"

    palette = params.get("palette") or "gray-4"
    if palette not in GRAYSCALE_PALETTES and palette not in COLOR_PALETTES:
        palette = "gray-4"

    levels_enabled = "levels_enabled" in params
    black_level = white_level = None
    if levels_enabled:
        black_level = _clamp_level(_int_param(params, "black_level"), 0)
        white_level = _clamp_level(_int_param(params, "white_level"), 100)

    bit_depth = _int_param(params, "bit_depth")
    if bit_depth not in VALID_BIT_DEPTHS:
        bit_depth = None

    compression_level = _int_param(params, "compression_level")
    if compression_level is None or not 1 <= compression_level <= 9:
        compression_level = 9

    return DitheringConfig(
        enabled=True,
        method=method,
        palette=palette,
        gamma_correction="no_gamma" not in params,
        levels_enabled=levels_enabled,
        black_level=black_level,
        white_level=white_level,
        normalize="no_normalize" not in params,
        saturation_boost="saturation_boost" in params,
        bit_depth=bit_depth,
        compression_level=compression_level,
    )


def parse_capture_params(params: Mapping[str, str], page_path: str = "/") -> CaptureRequest:
    """Resolve request parameters, raising InvalidParamsError on a bad viewport."""
    viewport = parse_viewport(params.get("viewport"))

    zoom = _float_param(params, "zoom")
    if zoom is None or zoom <= 0:
        zoom = 1.0

    fmt = params.get("format") or "png"
    if fmt not in VALID_FORMATS:
        fmt = "png"

    rotate = _int_param(params, "rotate")
    if rotate not in VALID_ROTATIONS:
        rotate = None

    next_seconds = _int_param(params, "next")
    if next_seconds is not None and next_seconds < 0:
        next_seconds = None

    return CaptureRequest(
        page_path=page_path or "/",
        target_url=params.get("url") or None,
        viewport=viewport,
        extra_wait=_int_param(params, "wait"),
        zoom=zoom,
        crop=parse_crop(params),
        invert="invert" in params,
        format=ImageFormat(fmt),
        rotate=rotate,
        lang=params.get("lang") or None,
        theme=params.get("theme") or None,
        dark="dark" in params,
        next=next_seconds,
        dithering=parse_dithering(params),
    )
