"""Reconciliation of batch results with the document being saved.

Form data is nested as ``{component_id: {field_name: value}}``. File
upload fields hold a ``FileUploadValue``; rich text fields hold a
Lexical editor state, either directly or as a map of locale to state.
Images pasted into rich text carry an ``uploadId`` until their upload
has been committed.
"""

import copy
import json
import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Final

from server.apps.uploads.entities import (
    TRANSIENT_VALUE_KEYS,
    BatchProcessResult,
    FileUploadError,
    FileUploadValue,
    UploadedFileInfo,
    split_field_key,
)
from server.apps.uploads.exceptions import (
    BatchUploadFailedError,
    UploadServiceUnavailableError,
)
from server.apps.uploads.logic.upload_manager import UploadManager

FormData = dict[str, dict[str, Any]]

_IMAGE_NODE_TYPE: Final = 'image'
_UPLOAD_ID_KEY: Final = 'uploadId'
_SIZE_UNITS: Final = ('Bytes', 'KB', 'MB', 'GB')
_SIZE_BASE: Final = 1024

logger = logging.getLogger(__name__)


def coerce_file_upload_value(raw: Any) -> FileUploadValue:
    """Normalize whatever a file upload field holds.

    JSON strings are decoded; missing or malformed values become an
    empty file list.

    Args:
        raw: Stored or submitted field value.

    Returns:
        FileUploadValue with a ``files`` list.
    """
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return {'files': []}
    if not isinstance(raw, Mapping) or not isinstance(raw.get('files'), list):
        return {'files': []}
    return dict(raw)  # type: ignore[return-value]


def strip_transient_flags(value: FileUploadValue) -> FileUploadValue:
    """Drop UI-only markers before the value is persisted.

    Args:
        value: File upload field value.

    Returns:
        Copy of the value without transient keys.
    """
    return {  # type: ignore[return-value]
        key: item
        for key, item in value.items()
        if key not in TRANSIENT_VALUE_KEYS
    }


def is_file_upload_value(value: Any) -> bool:
    """Check if a field value belongs to a file upload field."""
    return isinstance(value, Mapping) and isinstance(value.get('files'), list)


def is_lexical_editor_state(value: Any) -> bool:
    """Check if a value is a Lexical editor state."""
    return isinstance(value, Mapping) and 'root' in value


def is_rich_editor_value(value: Any) -> bool:
    """Check if a value is rich text, directly or per locale."""
    if is_lexical_editor_state(value):
        return True
    return isinstance(value, Mapping) and any(
        is_lexical_editor_state(item) for item in value.values()
    )


def extract_image_urls(value: Any) -> list[str]:
    """Collect absolute image URLs from a rich text value.

    Args:
        value: Lexical state or locale map of Lexical states.

    Returns:
        Image URLs in document order, duplicates included.
    """
    if is_lexical_editor_state(value):
        return _collect_image_urls(value)
    if is_rich_editor_value(value):
        urls: list[str] = []
        for locale_value in value.values():
            if is_lexical_editor_state(locale_value):
                urls.extend(_collect_image_urls(locale_value))
        return urls
    return []


def queue_rich_editor_image_deletions(
    manager: UploadManager,
    old_components: Iterable[Mapping[str, Any]],
    new_form_data: Mapping[str, Mapping[str, Any]],
    is_managed_url: Callable[[str], bool],
) -> list[str]:
    """Queue deletions for images removed from rich text fields.

    Args:
        manager: Upload manager of the editing session.
        old_components: Previously saved components, each shaped
            ``{'id': ..., 'data': {field_name: {'type': ..., 'value': ...}}}``.
        new_form_data: Form data about to be saved.
        is_managed_url: Tells whether a URL points at our storage;
            external images are never deleted.

    Returns:
        IDs of the queued deletion operations.
    """
    queued: list[str] = []
    for component in old_components:
        component_id = component['id']
        new_component_data = new_form_data.get(component_id) or {}

        for field_name, field_meta in (component.get('data') or {}).items():
            old_value = (field_meta or {}).get('value')
            if not is_rich_editor_value(old_value):
                continue

            kept_urls = set(extract_image_urls(new_component_data.get(field_name)))
            for url in extract_image_urls(old_value):
                if url in kept_urls or not is_managed_url(url):
                    continue
                queued.append(manager.queue_deletion(url, component_id, field_name))

    if queued:
        logger.info('Queued %d rich text image deletions', len(queued))
    return queued


async def process_form_data_for_save(
    manager: UploadManager,
    form_data: FormData,
) -> FormData:
    """Run pending file operations and merge their results into form data.

    Args:
        manager: Upload manager of the editing session.
        form_data: Form data about to be saved.

    Returns:
        Updated copy of the form data. Transient markers are stripped
        even when nothing is pending.

    Raises:
        UploadServiceUnavailableError: If the manager is not ready.
        BatchUploadFailedError: If every operation of the batch failed.
    """
    if not manager.get_queue_status().has_pending_operations:
        return strip_form_transient_flags(form_data)

    readiness = manager.validate_readiness()
    if not readiness.ready:
        raise UploadServiceUnavailableError(
            f'File upload service is not available: {", ".join(readiness.errors)}',
        )

    result = await manager.process_queue()
    if not result.success and not result.partial_failure:
        raise BatchUploadFailedError(
            f'File upload failed: {create_error_message(result.errors)}',
        )

    updated = merge_uploaded_files(form_data, result)
    manager.clear_completed()

    if result.partial_failure:
        logger.warning(
            'Some file operations failed: %s',
            create_error_message(result.errors),
        )
    return updated


def merge_uploaded_files(form_data: FormData, result: BatchProcessResult) -> FormData:
    """Splice a batch's uploads into form data.

    File upload fields get their new files appended and lose their
    transient markers. Fields stored as JSON strings are decoded
    first. Rich text image nodes waiting for an upload get the
    committed URL.

    Args:
        form_data: Form data about to be saved.
        result: Result of the batch that just ran.

    Returns:
        Updated deep copy of the form data.
    """
    updated = copy.deepcopy(form_data)

    for field_key, uploaded_files in result.uploaded_files_by_field.items():
        component_id, field_name = split_field_key(field_key)
        component_data = updated.get(component_id)
        if component_data is None or is_rich_editor_value(component_data.get(field_name)):
            continue
        field_value = coerce_file_upload_value(component_data.get(field_name))
        files = [*field_value['files'], *(f.as_descriptor() for f in uploaded_files)]
        component_data[field_name] = {**field_value, 'files': files}

    updated = strip_form_transient_flags(updated)
    uploads_by_id = {f.id: f for f in result.uploaded_files if f.id}
    if uploads_by_id:
        for component_id, component_data in updated.items():
            updated[component_id] = _replace_pending_images(component_data, uploads_by_id)
    return updated


def strip_form_transient_flags(form_data: FormData) -> FormData:
    """Drop UI-only markers from every file upload field.

    Args:
        form_data: Form data about to be saved.

    Returns:
        Deep copy of the form data.
    """
    stripped = copy.deepcopy(form_data)
    for component_data in stripped.values():
        for field_name, field_value in component_data.items():
            if is_file_upload_value(field_value):
                component_data[field_name] = strip_transient_flags(field_value)
    return stripped


def create_error_message(errors: list[FileUploadError]) -> str:
    """Summarize batch errors for the user.

    Args:
        errors: Errors collected during a batch.

    Returns:
        Single message, empty when there are no errors.
    """
    if not errors:
        return ''
    if len(errors) == 1:
        return errors[0].message
    details = ', '.join(error.message for error in errors)
    return f'{len(errors)} upload errors occurred: {details}'


def format_file_size(size_bytes: int) -> str:
    """Format a byte count for humans.

    Args:
        size_bytes: Size in bytes.

    Returns:
        Size such as '1.5 MB'.
    """
    if size_bytes <= 0:
        return '0 Bytes'

    size = float(size_bytes)
    unit_index = 0
    while size >= _SIZE_BASE and unit_index < len(_SIZE_UNITS) - 1:
        size /= _SIZE_BASE
        unit_index += 1
    return f'{round(size, 2):g} {_SIZE_UNITS[unit_index]}'


def _collect_image_urls(node: Any) -> list[str]:
    urls: list[str] = []
    if isinstance(node, list):
        for item in node:
            urls.extend(_collect_image_urls(item))
        return urls
    if not isinstance(node, Mapping):
        return urls

    src = node.get('src')
    if node.get('type') == _IMAGE_NODE_TYPE and isinstance(src, str) and src.startswith('http'):
        urls.append(src)
    for child in node.values():
        urls.extend(_collect_image_urls(child))
    return urls


def _replace_pending_images(node: Any, uploads_by_id: dict[str, UploadedFileInfo]) -> Any:
    if isinstance(node, list):
        return [_replace_pending_images(item, uploads_by_id) for item in node]
    if not isinstance(node, dict):
        return node

    upload_id = node.get(_UPLOAD_ID_KEY)
    if node.get('type') == _IMAGE_NODE_TYPE and upload_id in uploads_by_id:
        replaced = {key: item for key, item in node.items() if key != _UPLOAD_ID_KEY}
        replaced['src'] = uploads_by_id[upload_id].url
        return replaced
    return {key: _replace_pending_images(item, uploads_by_id) for key, item in node.items()}
