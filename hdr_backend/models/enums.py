#  HDR Backend - Enums
#
#  Status and type enumerations used across the system.
#
#  Depends on: (none)
#  Used by:    models/schemas.py, services/*, routes/*

from enum import Enum


class OrderStatus(str, Enum):
    CREATED = "created"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    PREVIEWS_READY = "previews_ready"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (OrderStatus.COMPLETED, OrderStatus.FAILED)


class BracketGrouping(str, Enum):
    BY_UPLOAD_GROUP = "by_upload_group"
    AUTO = "auto"
    ALL = "all"
    INDIVIDUAL = "individual"


class DownloadQuality(str, Enum):
    THUMBNAIL = "thumbnail"  # 400px
    PREVIEW = "preview"      # 800px
    MEDIUM = "medium"        # 1920px
    HIGH = "high"            # full resolution
    CUSTOM = "custom"        # caller supplies max_width or scale


class ImageFormat(str, Enum):
    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"


class UploadStage(str, Enum):
    FILE_READ = "file_read"
    CREATE_BRACKET = "create_bracket"
    UPLOAD = "upload"
    VERIFY = "verify"
    DATABASE = "database"


class BroadcastEvent(str, Enum):
    UPLOAD_STARTED = "upload_started"
    UPLOAD_COMPLETED = "upload_completed"
    PROCESSING_STARTED = "processing_started"
    PROCESSING_PROGRESS = "processing_progress"
    WEBHOOK_IMAGE_PROCESSED = "webhook_image_processed"
    DOWNLOAD_READY = "download_ready"
    PROCESSING_COMPLETED = "processing_completed"
    PROCESSING_FAILED = "processing_failed"
