#!/usr/bin/env python3

import io
import logging
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
from PIL import Image, ImageEnhance, ImageOps

from dithering import RasterOp

logger = logging.getLogger(__name__)

OUTPUT_SIZE_WARNING_BYTES = 50 * 1024


def bayer_matrix(order: int = 3) -> np.ndarray:
    """Normalized Bayer threshold matrix of size 2**order, values in (0, 1)."""
    matrix = np.zeros((1, 1), dtype=np.float64)
    for _ in range(order):
        size = matrix.shape[0]
        tiled = np.empty((size * 2, size * 2), dtype=np.float64)
        tiled[:size, :size] = 4 * matrix
        tiled[:size, size:] = 4 * matrix + 2
        tiled[size:, :size] = 4 * matrix + 3
        tiled[size:, size:] = 4 * matrix + 1
        matrix = tiled
    return (matrix + 0.5) / matrix.size


BAYER_8X8 = bayer_matrix(3)


def _tile_thresholds(height: int, width: int) -> np.ndarray:
    reps_y = -(-height // BAYER_8X8.shape[0])
    reps_x = -(-width // BAYER_8X8.shape[1])
    return np.tile(BAYER_8X8, (reps_y, reps_x))[:height, :width]


def _hex_to_rgb(color: str) -> Tuple[int, int, int]:
    color = color.lstrip('#')
    return int(color[0:2], 16), int(color[2:4], 16), int(color[4:6], 16)


def _palette_image(colors: Sequence[Tuple[int, int, int]]) -> Image.Image:
    palette_img = Image.new('P', (1, 1))
    flat: List[int] = []
    for rgb in colors:
        flat.extend(rgb)
    palette_img.putpalette(flat)
    return palette_img


def _gray_levels(levels: int) -> np.ndarray:
    return np.round(np.linspace(0, 255, levels)).astype(np.uint8)


def _flatten(img: Image.Image) -> Image.Image:
    """Drop alpha by compositing onto white; screenshots arrive as RGBA PNGs."""
    if img.mode == 'P' and 'transparency' in img.info:
        img = img.convert('RGBA')
    if img.mode in ('RGBA', 'LA'):
        background = Image.new('RGB', img.size, (255, 255, 255))
        background.paste(img.convert('RGBA'), mask=img.getchannel('A'))
        return background
    if img.mode not in ('RGB', 'L', 'P', '1'):
        return img.convert('RGB')
    return img


class RasterBackend:
    """Executes a declarative operation list built by dithering.build_operations."""

    def apply(self, image_bytes: bytes, operations: Iterable[RasterOp]) -> bytes:
        img = Image.open(io.BytesIO(image_bytes))
        img.load()
        icc_profile = img.info.get('icc_profile')
        img = _flatten(img)
        if icc_profile:
            img.info['icc_profile'] = icc_profile

        dither_method: Optional[str] = None
        for operation in operations:
            if operation.name == "encode":
                return self._encode(img, **operation.params)
            if operation.name == "dither":
                # Selects the dither mode of the following remap
                dither_method = operation.params["method"]
                continue
            handler = getattr(self, f"_op_{operation.name}", None)
            if handler is None:
                raise ValueError(f"Unknown raster operation: {operation.name}")
            params = operation.params
            if operation.name == "remap":
                params = dict(params, method=dither_method)
            img = handler(img, **params)

        return self._encode(img, format="png")

    # -- geometry / color --------------------------------------------------

    def _op_rotate(self, img: Image.Image, degrees: int) -> Image.Image:
        fill = 255 if img.mode in ('L', '1') else (255, 255, 255)
        if img.mode == 'P':
            img = img.convert('RGB')
        # PIL rotates counter-clockwise
        return img.rotate(-degrees, expand=True, fillcolor=fill)

    def _op_strip_profile(self, img: Image.Image) -> Image.Image:
        img.info.pop('icc_profile', None)
        return img

    def _op_grayscale(self, img: Image.Image) -> Image.Image:
        return img.convert('L')

    def _op_normalize(self, img: Image.Image) -> Image.Image:
        if img.mode not in ('L', 'RGB'):
            img = img.convert('RGB')
        return ImageOps.autocontrast(img, cutoff=(2, 1))

    def _op_levels(self, img: Image.Image, black: int, white: int) -> Image.Image:
        arr = np.asarray(img.convert('L'), dtype=np.float64)
        low, high = black * 255 / 100, white * 255 / 100
        if high == low:
            out = np.where(arr >= low, 255.0, 0.0)
        else:
            out = (arr - low) * 255.0 / (high - low)
        return Image.fromarray(np.clip(np.round(out), 0, 255).astype(np.uint8), 'L')

    def _op_modulate(self, img: Image.Image, brightness: int, saturation: int) -> Image.Image:
        img = img.convert('RGB')
        img = ImageEnhance.Brightness(img).enhance(brightness / 100)
        return ImageEnhance.Color(img).enhance(saturation / 100)

    def _op_invert(self, img: Image.Image) -> Image.Image:
        if img.mode == 'P':
            inverted = img.copy()
            palette = inverted.getpalette() or []
            inverted.putpalette([255 - value for value in palette])
            return inverted
        if img.mode == '1':
            img = img.convert('L')
        return ImageOps.invert(img)

    # -- quantization ------------------------------------------------------

    def _op_threshold(self, img: Image.Image, percent: int = 50) -> Image.Image:
        arr = np.asarray(img.convert('L'))
        cutoff = percent * 255 / 100
        return Image.fromarray(np.where(arr >= cutoff, 255, 0).astype(np.uint8), 'L')

    def _op_posterize(self, img: Image.Image, levels: int) -> Image.Image:
        arr = np.asarray(img.convert('L'), dtype=np.float64)
        steps = levels - 1
        out = np.round(np.round(arr / 255 * steps) * 255 / steps)
        return Image.fromarray(out.astype(np.uint8), 'L')

    def _op_ordered_dither(self, img: Image.Image, levels: int) -> Image.Image:
        arr = np.asarray(img.convert('L'), dtype=np.float64)
        steps = levels - 1
        thresholds = _tile_thresholds(*arr.shape)
        scaled = arr / 255 * steps
        index = np.clip(np.floor(scaled) + (scaled - np.floor(scaled) > thresholds), 0, steps)
        return Image.fromarray(_gray_levels(levels)[index.astype(np.intp)], 'L')

    def _op_error_diffusion(self, img: Image.Image, levels: int) -> Image.Image:
        grays = _gray_levels(levels)
        palette_img = _palette_image([(int(g), int(g), int(g)) for g in grays])
        quantized = img.convert('RGB').quantize(palette=palette_img, dither=Image.Dither.FLOYDSTEINBERG)
        return quantized.convert('L')

    def _op_remap(self, img: Image.Image, colors: Sequence[str], method: Optional[str] = None) -> Image.Image:
        rgb_colors = [_hex_to_rgb(c) for c in colors]
        palette_img = _palette_image(rgb_colors)
        img = img.convert('RGB')

        if method == "ordered":
            return self._ordered_remap(img, rgb_colors, palette_img)
        dither = Image.Dither.FLOYDSTEINBERG if method == "floyd-steinberg" else Image.Dither.NONE
        return img.quantize(palette=palette_img, dither=dither)

    def _ordered_remap(self, img: Image.Image, rgb_colors: Sequence[Tuple[int, int, int]],
                       palette_img: Image.Image) -> Image.Image:
        arr = np.asarray(img, dtype=np.float64)
        height, width = arr.shape[:2]
        spread = 255 / max(len(rgb_colors) - 1, 1)
        offsets = (_tile_thresholds(height, width) - 0.5) * spread
        biased = arr + offsets[:, :, None]

        palette = np.asarray(rgb_colors, dtype=np.float64)
        distances = ((biased[:, :, None, :] - palette[None, None, :, :]) ** 2).sum(axis=3)
        indices = distances.argmin(axis=2).astype(np.uint8)

        out = Image.fromarray(indices, 'P')
        out.putpalette(palette_img.getpalette()[:len(rgb_colors) * 3])
        return out

    # -- output ------------------------------------------------------------

    def _encode(self, img: Image.Image, format: str = "png", bit_depth: Optional[int] = None,
                compression_level: int = 9, palette: bool = False) -> bytes:
        buffer = io.BytesIO()
        save_kwargs = {}

        if format == "jpeg":
            if img.mode not in ('L', 'RGB'):
                img = img.convert('RGB')
            img.save(buffer, format='JPEG', quality=60, progressive=True, optimize=True)
        elif format == "bmp":
            if bit_depth == 1:
                img = img.convert('L').convert('1', dither=Image.Dither.NONE)
            elif bit_depth is not None and not palette:
                img = self._to_gray_depth(img, bit_depth) if bit_depth < 8 else img.convert('L')
            elif img.mode not in ('1', 'L', 'P', 'RGB'):
                img = img.convert('RGB')
            img.save(buffer, format='BMP')
        else:
            if bit_depth is not None and not palette:
                if bit_depth == 1:
                    img = img.convert('L').convert('1', dither=Image.Dither.NONE)
                elif bit_depth < 8:
                    img = self._to_gray_depth(img, bit_depth)
                    save_kwargs['bits'] = bit_depth
                else:
                    img = img.convert('L')
            if not palette:
                img.info.pop('icc_profile', None)
            img.save(buffer, format='PNG', compress_level=compression_level, optimize=False, **save_kwargs)

        data = buffer.getvalue()
        size_kb = len(data) / 1024
        status = "OVER 50KB" if len(data) > OUTPUT_SIZE_WARNING_BYTES else "ok"
        logger.info(f"Output: {len(data)} bytes ({size_kb:.1f}KB) {status} "
                    f"[depth:{bit_depth or 'auto'}, compression:{compression_level}]")
        return data

    @staticmethod
    def _to_gray_depth(img: Image.Image, bit_depth: int) -> Image.Image:
        """Index a grayscale image onto 2**bit_depth evenly spaced gray entries."""
        levels = 2 ** bit_depth
        arr = np.asarray(img.convert('L'), dtype=np.float64)
        indices = np.round(arr / 255 * (levels - 1)).astype(np.uint8)
        out = Image.fromarray(indices, 'P')
        grays = _gray_levels(levels)
        out.putpalette([int(g) for g in grays for _ in range(3)])
        return out
