"""Metadata and path utilities for queued files."""

import mimetypes
import re
import uuid
from pathlib import Path, PurePosixPath
from typing import Final
from urllib.parse import unquote, urlsplit

from django.core.files.uploadedfile import UploadedFile

_PROXY_PATH_PREFIX: Final = '/file/'
_MAX_FILENAME_LENGTH: Final = 255
_UNSAFE_FILENAME_CHARS: Final = re.compile(r'[<>:"/\\|?*]')
_CONTROL_CHARS: Final = re.compile(r'[\x00-\x1f\x7f-\x9f]')


def detect_mime_type(filename: str) -> str:
    """Detect MIME type from a filename.

    Args:
        filename: Filename with extension.

    Returns:
        MIME type string (e.g., 'image/jpeg', 'application/pdf').
        Returns 'application/octet-stream' if type cannot be determined.
    """
    mime_type, _ = mimetypes.guess_type(filename)
    if mime_type is None:
        return 'application/octet-stream'
    return mime_type


def get_content_type(file: UploadedFile) -> str:
    """Get the MIME type declared for an uploaded file.

    Falls back to guessing from the filename when the client did not
    send a content type.

    Args:
        file: Uploaded file.

    Returns:
        MIME type string.
    """
    return file.content_type or detect_mime_type(file.name or '')


def read_file_bytes(file: UploadedFile) -> bytes:
    """Read the whole content of an uploaded file.

    Resets the file pointer before and after reading so the file can
    be read again by later stages.

    Args:
        file: Uploaded file.

    Returns:
        Raw file content.
    """
    file.seek(0)
    content = file.read()
    file.seek(0)
    return content


def replace_extension(filename: str, extension: str) -> str:
    """Swap the extension of a filename.

    Args:
        filename: Original filename (e.g., 'photo.jpg').
        extension: New extension without dot (e.g., 'webp').

    Returns:
        Filename with the new extension (e.g., 'photo.webp').
    """
    stem = Path(filename).stem or filename
    return f'{stem}.{extension}'


def sanitize_filename(filename: str) -> str:
    """Make a filename safe to use inside an object key.

    Args:
        filename: Filename as sent by the client.

    Returns:
        Filename without control characters or path separators.
    """
    sanitized = _CONTROL_CHARS.sub('', filename)
    sanitized = _UNSAFE_FILENAME_CHARS.sub('_', sanitized)
    sanitized = re.sub('_+', '_', sanitized).strip('. _')
    if not sanitized:
        sanitized = 'file'

    if len(sanitized) > _MAX_FILENAME_LENGTH:
        suffix = Path(sanitized).suffix
        sanitized = sanitized[:_MAX_FILENAME_LENGTH - len(suffix)] + suffix
    return sanitized


def build_object_key(filename: str, prefix: str = '') -> str:
    """Build a collision-free storage key for a new upload.

    Args:
        filename: Original filename.
        prefix: Folder prefix inside the bucket.

    Returns:
        Key such as 'cms-uploads/3f2a...-photo.jpg'.
    """
    name = f'{uuid.uuid4().hex}-{sanitize_filename(filename)}'
    if not prefix:
        return name
    return str(PurePosixPath(prefix.strip('/'), name))


def extract_file_path_from_url(url: str, *, decode: bool = True) -> str | None:
    """Extract the storage path from a file URL.

    Handles both proxy URLs served by the upload worker
    ('https://worker.dev/file/cms-uploads/a.jpg') and direct storage
    URLs ('https://pub-xxx.r2.dev/cms-uploads/a.jpg').

    Args:
        url: Absolute URL of a stored file.
        decode: Percent-decode the path into an object name. Pass
            False to keep it encoded for building another URL.

    Returns:
        Storage path without leading slash, or None if the URL has
        no path or cannot be parsed.
    """
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None

    path = parts.path
    if path.startswith(_PROXY_PATH_PREFIX):
        path = path[len(_PROXY_PATH_PREFIX):]
    path = path.lstrip('/')
    if decode:
        path = unquote(path)
    return path or None
