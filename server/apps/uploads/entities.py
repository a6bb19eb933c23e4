"""In-memory entities of the upload engine.

Queued operations never touch the database: they live for the length
of one editing session and are discarded once their batch has been
reconciled into the saved document.
"""

import enum
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Final, Required, TypedDict

from django.core.files.uploadedfile import UploadedFile
from django.utils import timezone

# Keys used only to drive UI state, never persisted
TRANSIENT_VALUE_KEYS: Final = ('_hasPendingUploads', '_queuedCount')

# Separator of the "{component_id}:{field_name}" grouping key
FIELD_KEY_SEPARATOR: Final = ':'


class OperationType(enum.StrEnum):
    """Kind of queued file operation."""

    UPLOAD = 'upload'
    DELETE = 'delete'


class OperationStatus(enum.StrEnum):
    """Lifecycle state of a queued operation."""

    PENDING = 'pending'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    ERROR = 'error'


class QueuedFileStatus(enum.StrEnum):
    """Status vocabulary shown by upload fields."""

    PENDING = 'pending'
    UPLOADING = 'uploading'
    UPLOADED = 'uploaded'
    ERROR = 'error'


_QUEUED_FILE_STATUSES: Final = {
    OperationStatus.PENDING: QueuedFileStatus.PENDING,
    OperationStatus.PROCESSING: QueuedFileStatus.UPLOADING,
    OperationStatus.COMPLETED: QueuedFileStatus.UPLOADED,
    OperationStatus.ERROR: QueuedFileStatus.ERROR,
}


class PreviewHandle:
    """Preview URL paired with the callback that releases it.

    Releasing is idempotent: the callback runs on the first call only.
    """

    def __init__(self, url: str, release: Callable[[], None]) -> None:
        """Initialize PreviewHandle.

        Args:
            url: URL the UI can render while the upload is pending.
            release: Callback freeing the resource behind the URL.
        """
        self.url = url
        self._release = release
        self._released = False

    @property
    def released(self) -> bool:
        """Whether the handle has already been released."""
        return self._released

    def release(self) -> None:
        """Release the preview resource once."""
        if self._released:
            return
        self._released = True
        self._release()

    def __repr__(self) -> str:
        return f'PreviewHandle(url={self.url!r}, released={self._released})'


@dataclass
class QueuedOperation:
    """Upload or delete request awaiting or having undergone transfer.

    Exactly one payload is set: ``file`` for uploads, ``target_url``
    for deletions.
    """

    id: str
    type: OperationType
    status: OperationStatus = OperationStatus.PENDING
    component_id: str | None = None
    field_name: str | None = None
    file: UploadedFile | None = None
    target_url: str | None = None
    preview: PreviewHandle | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=timezone.now)
    updated_at: datetime = field(default_factory=timezone.now)

    def __post_init__(self) -> None:
        """Check that the payload matches the operation type.

        Raises:
            ValueError: If the payload is missing or ambiguous.
        """
        if self.type == OperationType.UPLOAD:
            if self.file is None or self.target_url is not None:
                raise ValueError('Upload operations carry a file and no URL')
        elif self.target_url is None or self.file is not None:
            raise ValueError('Delete operations carry a URL and no file')
        if self.preview is not None and self.type != OperationType.UPLOAD:
            raise ValueError('Only upload operations can have a preview')

    @property
    def preview_url(self) -> str | None:
        """URL of the preview, if one was generated."""
        if self.preview is None:
            return None
        return self.preview.url

    @property
    def field_key(self) -> str | None:
        """Grouping key, or None when a correlation key is missing."""
        if not self.component_id or not self.field_name:
            return None
        return build_field_key(self.component_id, self.field_name)


@dataclass(frozen=True)
class QueuedUpload:
    """Handle returned to the field that queued an upload."""

    id: str
    preview_url: str | None = None


@dataclass(frozen=True)
class QueuedFile:
    """Upload operation as presented by file upload fields."""

    id: str
    file: UploadedFile
    status: QueuedFileStatus
    preview_url: str | None = None
    error: str | None = None

    @classmethod
    def from_operation(cls, operation: QueuedOperation) -> 'QueuedFile':
        """Project an upload operation for the UI.

        Args:
            operation: Upload operation from the queue.

        Returns:
            QueuedFile with the UI status vocabulary.
        """
        return cls(
            id=operation.id,
            file=operation.file,  # type: ignore[arg-type]
            status=_QUEUED_FILE_STATUSES[operation.status],
            preview_url=operation.preview_url,
            error=operation.error,
        )


class FileDescriptorDict(TypedDict):
    """Persisted description of a committed file."""

    url: str
    name: str
    size: int
    type: str


class FileUploadValue(TypedDict, total=False):
    """Value of a file upload field inside form data."""

    files: Required[list[FileDescriptorDict]]
    _hasPendingUploads: bool
    _queuedCount: int


@dataclass(frozen=True)
class UploadedFileInfo:
    """File committed by a batch, with the operation that produced it."""

    url: str
    name: str
    size: int
    type: str
    id: str | None = None

    def as_descriptor(self) -> FileDescriptorDict:
        """Return the persisted form of this file.

        Returns:
            Descriptor without the operation ID.
        """
        return {
            'url': self.url,
            'name': self.name,
            'size': self.size,
            'type': self.type,
        }


@dataclass(frozen=True)
class FileUploadError:
    """Failure of one operation within a batch."""

    message: str
    file_name: str | None = None

    @classmethod
    def from_exception(
        cls,
        error: BaseException,
        file_name: str | None = None,
    ) -> 'FileUploadError':
        """Build an error record from a caught exception.

        Args:
            error: Exception raised by the transfer service.
            file_name: Name or URL of the affected file.

        Returns:
            FileUploadError carrying the exception message.
        """
        return cls(message=str(error) or type(error).__name__, file_name=file_name)


@dataclass
class BatchProcessResult:
    """Outcome of one ``process_queue`` call."""

    success: bool = True
    partial_failure: bool = False
    uploaded_files: list[UploadedFileInfo] = field(default_factory=list)
    uploaded_files_by_field: dict[str, list[UploadedFileInfo]] = field(
        default_factory=dict,
    )
    errors: list[FileUploadError] = field(default_factory=list)


@dataclass(frozen=True)
class QueueStats:
    """Operation counts by status and type."""

    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    error: int = 0
    uploads: int = 0
    deletions: int = 0


@dataclass(frozen=True)
class QueueStatus:
    """Snapshot of the queue for the save pipeline."""

    stats: QueueStats
    operations: list[QueuedOperation]
    is_processing: bool
    has_pending_operations: bool


@dataclass(frozen=True)
class ReadinessReport:
    """Whether a save may start processing the queue."""

    ready: bool
    errors: list[str] = field(default_factory=list)


def build_field_key(component_id: str, field_name: str) -> str:
    """Build the key grouping uploads by originating field.

    Args:
        component_id: Component that owns the field.
        field_name: Name of the field within the component.

    Returns:
        Key in the form "{component_id}:{field_name}".
    """
    return f'{component_id}{FIELD_KEY_SEPARATOR}{field_name}'


def split_field_key(field_key: str) -> tuple[str, str]:
    """Split a grouping key back into its correlation keys.

    Args:
        field_key: Key built by ``build_field_key``.

    Returns:
        Tuple of component ID and field name.
    """
    component_id, _, field_name = field_key.partition(FIELD_KEY_SEPARATOR)
    return component_id, field_name
