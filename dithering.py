#!/usr/bin/env python3
"""
Quantization strategies for e-ink output.

A strategy never touches pixels. It maps an operation list plus a
{mode, colors} target onto a new operation list that the raster backend
executes. Three strategies exist:

    threshold        hard cutoff / posterize, fastest, visible banding
    ordered          Bayer matrix thresholds, regular repeating pattern
    floyd-steinberg  error diffusion (7/16 right, 3/16 below-left,
                     5/16 below, 1/16 below-right), slowest, best tone

Unknown modes leave the operation list untouched and the input tuple is
never modified.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from config import COLOR_PALETTES, GRAYSCALE_PALETTES, VALID_ROTATIONS
from models import DitheringConfig

logger = logging.getLogger(__name__)

GRAYSCALE = "grayscale"
COLOR = "color"


@dataclass(frozen=True)
class RasterOp:
    name: str
    params: Mapping[str, Any] = field(default_factory=dict)


Operations = Tuple[RasterOp, ...]
Strategy = Callable[[Operations, str, Optional[int]], Operations]


def op(name: str, **params) -> RasterOp:
    return RasterOp(name, params)


def threshold_strategy(ops: Operations, mode: str, colors: Optional[int] = None) -> Operations:
    if mode == GRAYSCALE:
        if colors == 2:
            return ops + (op("threshold", percent=50),)
        if colors is not None and colors > 2:
            return ops + (op("posterize", levels=colors),)
    elif mode == COLOR:
        # Nearest-color remap happens in the palette stage
        return ops
    return ops


def ordered_strategy(ops: Operations, mode: str, colors: Optional[int] = None) -> Operations:
    if mode == GRAYSCALE:
        if colors is not None and colors >= 2:
            return ops + (op("ordered_dither", levels=colors),)
    elif mode == COLOR:
        return ops + (op("dither", method="ordered"),)
    return ops


def floyd_steinberg_strategy(ops: Operations, mode: str, colors: Optional[int] = None) -> Operations:
    if mode == GRAYSCALE:
        if colors is not None and colors >= 2:
            return ops + (op("error_diffusion", levels=colors),)
    elif mode == COLOR:
        return ops + (op("dither", method="floyd-steinberg"),)
    return ops


STRATEGIES: Dict[str, Strategy] = {
    "floyd-steinberg": floyd_steinberg_strategy,
    "ordered": ordered_strategy,
    "threshold": threshold_strategy,
    "none": threshold_strategy,  # legacy alias
}


def get_strategy(method: str) -> Strategy:
    return STRATEGIES.get(method, floyd_steinberg_strategy)


def is_color_palette(palette: str) -> bool:
    return palette in COLOR_PALETTES


def bit_depth_for(levels: int) -> int:
    """2 colors = 1-bit, 4 = 2-bit, 16 = 4-bit, 256 = 8-bit."""
    return math.ceil(math.log2(levels))


def validate_dithering_options(config: DitheringConfig) -> DitheringConfig:
    """Fill in defaults and clamp out-of-range values.

    Black level greater than white level is passed through unchanged.
    """
    palette = config.palette
    if palette not in GRAYSCALE_PALETTES and palette not in COLOR_PALETTES:
        palette = "gray-4"
    method = config.method if config.method in STRATEGIES else "floyd-steinberg"

    updates: Dict[str, Any] = {"palette": palette, "method": method}
    if config.black_level is not None:
        updates["black_level"] = max(0, min(100, config.black_level))
    if config.white_level is not None:
        updates["white_level"] = max(0, min(100, config.white_level))
    if config.saturation_boost is None:
        updates["saturation_boost"] = is_color_palette(palette)
    if not 1 <= config.compression_level <= 9:
        updates["compression_level"] = 9
    return config.model_copy(update=updates)


def _grayscale_operations(config: DitheringConfig) -> Tuple[Operations, int]:
    levels = GRAYSCALE_PALETTES[config.palette]
    ops: Operations = (op("grayscale"),)

    if config.normalize:
        ops += (op("normalize"),)

    effective = config.effective_levels
    if effective is not None:
        black, white = effective
        if black > 0 or white < 100:
            ops += (op("levels", black=black, white=white),)

    ops = get_strategy(config.method)(ops, GRAYSCALE, levels)
    return ops, bit_depth_for(levels)


def _color_operations(config: DitheringConfig) -> Operations:
    ops: Operations = ()
    # Must precede normalize, which would otherwise cancel it
    if config.saturation_boost:
        ops += (op("modulate", brightness=110, saturation=150),)
    if config.normalize:
        ops += (op("normalize"),)

    ops = get_strategy(config.method)(ops, COLOR, None)
    return ops + (op("remap", colors=tuple(COLOR_PALETTES[config.palette])),)


def build_operations(fmt: str = "png",
                     rotate: Optional[int] = None,
                     invert: bool = False,
                     dithering: Optional[DitheringConfig] = None) -> Operations:
    """Build the complete operation list for one captured frame."""
    ops: Operations = ()
    if rotate in VALID_ROTATIONS:
        ops += (op("rotate", degrees=rotate),)

    if dithering is None or not dithering.enabled:
        if invert:
            ops += (op("invert"),)
        return ops + (op("encode", format=fmt, bit_depth=None, compression_level=9, palette=False),)

    config = validate_dithering_options(dithering)
    if config.gamma_correction:
        ops += (op("strip_profile"),)

    color = is_color_palette(config.palette)
    bit_depth = None
    if color:
        ops += _color_operations(config)
    else:
        gray_ops, palette_depth = _grayscale_operations(config)
        ops += gray_ops
        bit_depth = config.bit_depth or palette_depth
        if config.bit_depth and config.bit_depth != palette_depth:
            logger.debug(f"Using custom bit depth {config.bit_depth} (palette default: {palette_depth})")

    if invert:
        ops += (op("invert"),)

    return ops + (op("encode", format=fmt, bit_depth=bit_depth,
                     compression_level=config.compression_level, palette=color),)
