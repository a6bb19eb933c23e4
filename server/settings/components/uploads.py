"""Upload engine settings."""

from typing import Any, Final

from server.settings.components import config

# Which transfer backend processes queued operations: 'worker' or 'storage'
UPLOAD_TRANSFER_BACKEND = config('UPLOAD_TRANSFER_BACKEND', default='worker')

# Presign worker that keeps bucket credentials out of the editor
UPLOAD_WORKER_URL = config('UPLOAD_WORKER_URL', default='')
UPLOAD_TRANSFER_TIMEOUT = config(
    'UPLOAD_TRANSFER_TIMEOUT',
    cast=float,
    default=30.0,
)

# Object keys and presigned URLs for the storage backend
UPLOAD_KEY_PREFIX = config('UPLOAD_KEY_PREFIX', default='cms-uploads')
UPLOAD_PRESIGN_EXPIRES = config('UPLOAD_PRESIGN_EXPIRES', cast=int, default=3600)

# Longest edge of generated preview thumbnails, in pixels
UPLOAD_PREVIEW_MAX_SIZE = config('UPLOAD_PREVIEW_MAX_SIZE', cast=int, default=256)

# Overrides for ImageOptimizationConfig
UPLOAD_IMAGE_OPTIMIZATION: Final[dict[str, Any]] = {
    'enable_webp_conversion': config(
        'UPLOAD_ENABLE_WEBP',
        cast=bool,
        default=True,
    ),
    'quality': config('UPLOAD_IMAGE_QUALITY', cast=int, default=85),
    'max_width': config('UPLOAD_IMAGE_MAX_WIDTH', cast=int, default=1920),
    'max_height': config('UPLOAD_IMAGE_MAX_HEIGHT', cast=int, default=1080),
}
