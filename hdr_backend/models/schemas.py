#  HDR Backend - Pydantic Schemas
#
#  Request/response models for the REST API.
#
#  Depends on: models/enums.py
#  Used by:    routes/*, services/*

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from hdr_backend.models.enums import (
    BracketGrouping,
    DownloadQuality,
    ImageFormat,
    OrderStatus,
    UploadStage,
)


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

class OrderCreate(BaseModel):
    name: str | None = Field(default=None, max_length=200)
    metadata: dict = Field(default_factory=dict)


class OrderOut(BaseModel):
    id: str
    user_id: str
    status: OrderStatus
    progress: int
    metadata: dict = Field(default_factory=dict)
    name: str | None = None
    provider_status: str | None = None
    is_processing: bool = False
    is_merging: bool = False
    is_deleted: bool = False
    total_images: int = 0
    provider_last_updated_at: str | None = None
    error_message: str | None = None
    created_at: float
    updated_at: float
    # Live provider data, present when the provider answered
    images: list[dict] | None = None
    total_brackets: int | None = None
    uploaded_brackets: int | None = None


class OrderStatusOut(BaseModel):
    order_id: str
    status: OrderStatus
    progress: int
    error_message: str | None = None
    name: str | None = None
    provider_status: str | None = None
    is_processing: bool = False
    is_merging: bool = False
    is_deleted: bool = False
    total_images: int = 0
    updated_at: float


class VerifyOut(BaseModel):
    order_id: str
    order_status: OrderStatus
    provider_status: str | None = None
    total_brackets: int
    uploaded_brackets: int
    total_images: int
    has_uploaded_images: bool
    brackets: list[dict]
    images: list[dict]


class MessageOut(BaseModel):
    message: str


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------

class UploadedFileOut(BaseModel):
    filename: str
    size: int
    bracket_id: str | None = None
    image_id: str | None = None
    group_id: str | None = None
    verified: bool = False


class UploadErrorOut(BaseModel):
    filename: str
    error: str
    stage: UploadStage


class UploadOut(BaseModel):
    order_id: str
    files: list[UploadedFileOut]
    status: OrderStatus
    errors: list[UploadErrorOut] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------

class ProcessRequest(BaseModel):
    enhance_type: str | None = None
    sky_replacement: bool | None = None
    vertical_correction: bool | None = None
    lens_correction: bool | None = None
    window_pull_type: str | None = None
    upscale: bool | None = None
    privacy: bool | None = None
    cloud_type: str | None = None
    ai_version: str | None = None
    bracket_grouping: BracketGrouping | list[list[str]] | None = None
    brackets_per_image: int | None = Field(default=None, ge=1, le=20)


class ProcessOut(BaseModel):
    order_id: str
    status: OrderStatus
    message: str
    processing_params: dict[str, Any]


# ---------------------------------------------------------------------------
# Files, brackets, images
# ---------------------------------------------------------------------------

class StoredFileOut(BaseModel):
    id: str
    order_id: str
    filename: str
    provider_image_id: str | None = None
    storage_path: str
    storage_url: str
    file_size: int
    mime_type: str
    is_final: bool
    created_at: float


class BracketOut(BaseModel):
    id: str
    order_id: str
    bracket_id: str
    image_id: str | None = None
    filename: str
    is_uploaded: bool
    metadata: dict = Field(default_factory=dict)
    created_at: float
    provider: dict | None = None  # live provider bracket, if reachable


class ImageOut(BaseModel):
    image_id: str
    image_name: str = ""
    status: str | None = None
    status_reason: str | None = None
    preview_downloaded: bool = False
    preview_url: str | None = None
    high_res_downloaded: bool = False
    high_res_url: str | None = None
    processing_settings: dict = Field(default_factory=dict)


class DownloadRequest(BaseModel):
    quality: DownloadQuality = DownloadQuality.PREVIEW
    format: ImageFormat = ImageFormat.JPEG
    watermark: bool = True
    finetune: bool | None = None
    max_width: int | None = Field(default=None, gt=0)
    scale: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _custom_needs_size(self):
        if self.quality == DownloadQuality.CUSTOM and not (self.max_width or self.scale):
            raise ValueError("custom quality requires max_width or scale")
        return self


class DownloadOut(BaseModel):
    image_id: str
    quality: DownloadQuality
    url: str
    file_size: int
    watermark: bool
    resolution: str
    format: ImageFormat
    credit_used: bool
    message: str


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

class WebhookEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: str
    image_id: str | None = None
    error: bool = False
    order_id: str | None = None
    order_is_processing: bool = False


class HealthOut(BaseModel):
    status: str = "ok"
    background_tasks: int = 0
