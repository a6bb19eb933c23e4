"""Preview thumbnails for images waiting in the upload queue."""

import io
import logging
import tempfile
from pathlib import Path
from typing import Final

from django.conf import settings
from django.core.files.uploadedfile import UploadedFile
from PIL import Image

from server.apps.uploads.entities import PreviewHandle
from server.apps.uploads.infrastructure.metadata import read_file_bytes

_PREVIEW_PREFIX: Final = 'upload-preview-'

logger = logging.getLogger(__name__)


def get_preview_max_size() -> int:
    """Get the longest edge of preview thumbnails.

    Returns:
        Size in pixels from settings or default of 256.
    """
    return getattr(settings, 'UPLOAD_PREVIEW_MAX_SIZE', 256)


def create_image_preview(file: UploadedFile) -> PreviewHandle:
    """Render a thumbnail of an image into a temporary file.

    The returned handle owns the temporary file: releasing it deletes
    the thumbnail from disk.

    Args:
        file: Image file queued for upload.

    Returns:
        PreviewHandle with a ``file://`` URL to the thumbnail.

    Raises:
        OSError: If the image cannot be decoded or written.
    """
    max_size = get_preview_max_size()
    with Image.open(io.BytesIO(read_file_bytes(file))) as image:
        image.thumbnail((max_size, max_size))
        if image.mode not in {'RGB', 'RGBA'}:
            image = image.convert('RGBA')
        with tempfile.NamedTemporaryFile(
            prefix=_PREVIEW_PREFIX,
            suffix='.png',
            delete=False,
        ) as target:
            image.save(target, format='PNG')
            preview_path = Path(target.name)

    logger.debug('Created preview for %s: %s', file.name, preview_path)
    return PreviewHandle(
        url=preview_path.as_uri(),
        release=lambda: _remove_preview(preview_path),
    )


def _remove_preview(preview_path: Path) -> None:
    """Delete a preview thumbnail from disk.

    Args:
        preview_path: Path of the thumbnail file.
    """
    preview_path.unlink(missing_ok=True)
    logger.debug('Released preview: %s', preview_path)
