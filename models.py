#!/usr/bin/env python3

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Tuple
from enum import Enum


class ImageFormat(str, Enum):
    PNG = "png"
    JPEG = "jpeg"
    BMP = "bmp"


class DitheringMethod(str, Enum):
    FLOYD_STEINBERG = "floyd-steinberg"
    ORDERED = "ordered"
    THRESHOLD = "threshold"


class WebhookFormat(str, Enum):
    RAW = "raw"
    BYOS_HANAMI = "byos-hanami"


class Viewport(BaseModel):
    width: int = Field(gt=0)
    height: int = Field(gt=0)


class CropRegion(BaseModel):
    x: int = 0
    y: int = 0
    width: int = Field(gt=0)
    height: int = Field(gt=0)


class ScheduleCrop(BaseModel):
    """Crop as stored on a schedule; zero sizes are allowed while disabled."""
    enabled: bool = False
    x: int = 0
    y: int = 0
    width: int = 0
    height: int = 0


class DitheringConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = False
    method: str = DitheringMethod.FLOYD_STEINBERG.value  # "none" is a legacy alias of threshold
    palette: str = "gray-4"
    gamma_correction: bool = Field(default=True, alias="gammaCorrection")
    levels_enabled: bool = Field(default=False, alias="levelsEnabled")
    black_level: Optional[int] = Field(default=None, alias="blackLevel")  # 0-100, percent
    white_level: Optional[int] = Field(default=None, alias="whiteLevel")  # 0-100, percent
    normalize: bool = True
    saturation_boost: Optional[bool] = Field(default=None, alias="saturationBoost")  # None = on for color palettes
    bit_depth: Optional[int] = Field(default=None, alias="bitDepth")  # 1, 2, 4 or 8
    compression_level: int = Field(default=9, alias="compressionLevel")  # 1-9

    @property
    def effective_levels(self) -> Optional[Tuple[int, int]]:
        """Black/white levels to apply, or None when level clamps are disabled."""
        if not self.levels_enabled:
            return None
        black = 0 if self.black_level is None else self.black_level
        white = 100 if self.white_level is None else self.white_level
        return black, white


class ByosAuthConfig(BaseModel):
    enabled: bool = False
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    obtained_at: Optional[int] = None  # milliseconds since epoch


class ByosHanamiConfig(BaseModel):
    label: str
    name: str
    model_id: str
    preprocessed: bool = True
    auth: Optional[ByosAuthConfig] = None


class WebhookFormatConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    format: WebhookFormat = WebhookFormat.RAW
    byos_config: Optional[ByosHanamiConfig] = Field(default=None, alias="byosConfig")


class ScheduleInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    enabled: bool = True
    cron: str = "*/5 * * * *"
    webhook_url: Optional[str] = None
    webhook_headers: Dict[str, str] = Field(default_factory=dict)
    webhook_format: Optional[WebhookFormatConfig] = None
    ha_mode: bool = True  # False = capture target_url instead of a dashboard path
    dashboard_path: str = "/lovelace/0"
    target_url: Optional[str] = None
    viewport: Viewport = Field(default_factory=lambda: Viewport(width=800, height=480))
    crop: ScheduleCrop = Field(default_factory=ScheduleCrop)
    format: ImageFormat = ImageFormat.PNG
    rotate: Optional[int] = None  # 90, 180 or 270
    zoom: float = Field(default=1.0, gt=0)
    wait: Optional[int] = None  # fixed milliseconds, None or 0 = readiness checks
    theme: Optional[str] = None
    lang: Optional[str] = None
    dark: bool = False
    invert: bool = False
    dithering: DitheringConfig = Field(default_factory=DitheringConfig)


class Schedule(ScheduleInput):
    id: str
    created_at: str = Field(alias="createdAt")  # ISO format
    updated_at: str = Field(alias="updatedAt")  # ISO format


class ScheduleUpdate(BaseModel):
    """Partial update; only fields explicitly set are applied."""
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    enabled: Optional[bool] = None
    cron: Optional[str] = None
    webhook_url: Optional[str] = None
    webhook_headers: Optional[Dict[str, str]] = None
    webhook_format: Optional[WebhookFormatConfig] = None
    ha_mode: Optional[bool] = None
    dashboard_path: Optional[str] = None
    target_url: Optional[str] = None
    viewport: Optional[Viewport] = None
    crop: Optional[ScheduleCrop] = None
    format: Optional[ImageFormat] = None
    rotate: Optional[int] = None
    zoom: Optional[float] = Field(default=None, gt=0)
    wait: Optional[int] = None
    theme: Optional[str] = None
    lang: Optional[str] = None
    dark: Optional[bool] = None
    invert: Optional[bool] = None
    dithering: Optional[DitheringConfig] = None


class CaptureRequest(BaseModel):
    page_path: str = "/"
    target_url: Optional[str] = None  # overrides page_path when set
    viewport: Viewport
    extra_wait: Optional[int] = None  # fixed delay in milliseconds instead of readiness checks
    zoom: float = 1.0
    crop: Optional[CropRegion] = None
    invert: bool = False
    format: ImageFormat = ImageFormat.PNG
    rotate: Optional[int] = None
    lang: Optional[str] = None
    theme: Optional[str] = None
    dark: bool = False
    next: Optional[int] = None  # seconds until the next expected request
    dithering: Optional[DitheringConfig] = None


class NavigationResult(BaseModel):
    wait_ms: int = 0
    setup_changed: bool = False  # theme or language pushed
    external: bool = False


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str


class ByosLoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    webhook_url: str = Field(alias="webhookUrl")
    login: str
    password: str


class WebhookResult(BaseModel):
    attempted: bool
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    url: Optional[str] = None


class ExecutionResult(BaseModel):
    success: bool
    saved_path: Optional[str] = None
    error: Optional[str] = None
    webhook: Optional[WebhookResult] = None


class PaletteOption(BaseModel):
    value: str
    label: str
    levels: Optional[int] = None
    colors: Optional[List[str]] = None
