import pytest

from models import CropRegion, ImageFormat
from params_parser import InvalidParamsError, parse_capture_params, parse_crop, parse_viewport


@pytest.mark.parametrize("value,expected", [
    ("800x480", (800, 480)),
    ("1x1", (1, 1)),
    ("1872x1404", (1872, 1404)),
    (" 600x448 ", (600, 448)),
])
def test_viewport_recovers_exact_dimensions(value, expected):
    viewport = parse_viewport(value)
    assert (viewport.width, viewport.height) == expected


@pytest.mark.parametrize("value", [
    None, "", "800", "800x", "x480", "axb", "800x480x2", "800X480", "0x480", "800x0", "-5x10", "8.5x4",
])
def test_viewport_rejects_malformed_strings(value):
    with pytest.raises(InvalidParamsError):
        parse_viewport(value)


def test_missing_viewport_rejects_request():
    with pytest.raises(InvalidParamsError):
        parse_capture_params({"format": "png"})


def test_defaults_for_minimal_request():
    request = parse_capture_params({"viewport": "800x480"}, "/lovelace/0")
    assert request.page_path == "/lovelace/0"
    assert request.format == ImageFormat.PNG
    assert request.zoom == 1.0
    assert request.rotate is None
    assert request.crop is None
    assert request.dithering is None
    assert request.invert is False
    assert request.dark is False
    assert request.next is None


def test_invalid_optional_fields_fall_back():
    request = parse_capture_params({
        "viewport": "800x480",
        "format": "gif",
        "rotate": "45",
        "zoom": "abc",
        "next": "-3",
        "wait": "soon",
    })
    assert request.format == ImageFormat.PNG
    assert request.rotate is None
    assert request.zoom == 1.0
    assert request.next is None
    assert request.extra_wait is None


def test_valid_optional_fields_are_kept():
    request = parse_capture_params({
        "viewport": "800x480",
        "format": "bmp",
        "rotate": "270",
        "zoom": "1.5",
        "wait": "2000",
        "next": "300",
        "url": "https://example.com/page",
        "lang": "de",
        "theme": "Graphite",
        "dark": "",
        "invert": "",
    })
    assert request.format == ImageFormat.BMP
    assert request.rotate == 270
    assert request.zoom == 1.5
    assert request.extra_wait == 2000
    assert request.next == 300
    assert request.target_url == "https://example.com/page"
    assert request.lang == "de"
    assert request.theme == "Graphite"
    assert request.dark is True
    assert request.invert is True


def test_crop_requires_all_four_fields():
    assert parse_crop({"crop_x": "10", "crop_y": "20", "crop_width": "100"}) is None
    assert parse_crop({"crop_x": "10", "crop_y": "20", "crop_width": "100", "crop_height": "abc"}) is None
    assert parse_crop({"crop_x": "10", "crop_y": "20", "crop_width": "0", "crop_height": "50"}) is None
    assert parse_crop({"crop_x": "10", "crop_y": "20", "crop_width": "100", "crop_height": "50"}) == \
        CropRegion(x=10, y=20, width=100, height=50)


def test_dithering_only_parsed_with_flag():
    request = parse_capture_params({"viewport": "800x480", "dither_method": "ordered", "palette": "bw"})
    assert request.dithering is None


def test_dithering_defaults():
    dithering = parse_capture_params({"viewport": "800x480", "dithering": ""}).dithering
    assert dithering.enabled is True
    assert dithering.method == "floyd-steinberg"
    assert dithering.palette == "gray-4"
    assert dithering.gamma_correction is True
    assert dithering.normalize is True
    assert dithering.saturation_boost is False
    assert dithering.bit_depth is None
    assert dithering.compression_level == 9


def test_dithering_negation_flags_and_unknown_values():
    dithering = parse_capture_params({
        "viewport": "800x480",
        "dithering": "",
        "dither_method": "atkinson",
        "palette": "color-99",
        "no_gamma": "",
        "no_normalize": "",
        "bit_depth": "3",
        "compression_level": "0",
    }).dithering
    assert dithering.method == "floyd-steinberg"
    assert dithering.palette == "gray-4"
    assert dithering.gamma_correction is False
    assert dithering.normalize is False
    assert dithering.bit_depth is None
    assert dithering.compression_level == 9


@pytest.mark.parametrize("bit_depth", ["1", "2", "4", "8"])
def test_dithering_accepts_listed_bit_depths(bit_depth):
    dithering = parse_capture_params({"viewport": "8x8", "dithering": "", "bit_depth": bit_depth}).dithering
    assert dithering.bit_depth == int(bit_depth)


@pytest.mark.parametrize("params", [
    {"black_level": "30", "white_level": "70"},
    {"black_level": "150"},
    {},
])
def test_levels_absent_unless_enabled(params):
    dithering = parse_capture_params({"viewport": "800x480", "dithering": "", **params}).dithering
    assert dithering.black_level is None
    assert dithering.white_level is None
    assert dithering.effective_levels is None


def test_levels_clamped_when_enabled():
    dithering = parse_capture_params({
        "viewport": "800x480",
        "dithering": "",
        "levels_enabled": "",
        "black_level": "-20",
        "white_level": "140",
    }).dithering
    assert dithering.effective_levels == (0, 100)


def test_contradictory_levels_are_not_reordered():
    dithering = parse_capture_params({
        "viewport": "800x480",
        "dithering": "",
        "levels_enabled": "",
        "black_level": "80",
        "white_level": "20",
    }).dithering
    assert dithering.effective_levels == (80, 20)
