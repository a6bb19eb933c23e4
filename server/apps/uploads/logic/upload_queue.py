"""In-memory queue of deferred file operations.

The queue is the only place where operations are created, mutated
and destroyed. Every mutation notifies subscribers synchronously so
upload fields can re-render from the current state.
"""

import logging
import secrets
from collections.abc import Callable, Iterable
from itertools import count
from typing import Final

from django.core.files.uploadedfile import UploadedFile
from django.dispatch import Signal
from django.utils import timezone

from server.apps.uploads.entities import (
    OperationStatus,
    OperationType,
    PreviewHandle,
    QueuedFile,
    QueuedOperation,
    QueuedUpload,
    QueueStats,
)
from server.apps.uploads.exceptions import InvalidStatusTransitionError
from server.apps.uploads.infrastructure.metadata import get_content_type
from server.apps.uploads.infrastructure.previews import create_image_preview

PreviewFactory = Callable[[UploadedFile], PreviewHandle]
Listener = Callable[[], None]
Unsubscribe = Callable[[], None]

# Random part of operation IDs (generates 8 hex chars)
_ID_TOKEN_BYTES: Final = 4

_ALLOWED_TRANSITIONS: Final = {
    OperationStatus.PENDING: frozenset((OperationStatus.PROCESSING,)),
    OperationStatus.PROCESSING: frozenset((
        OperationStatus.COMPLETED,
        OperationStatus.ERROR,
    )),
    OperationStatus.COMPLETED: frozenset(),
    OperationStatus.ERROR: frozenset(),
}

logger = logging.getLogger(__name__)


class UploadQueue:
    """Id-keyed collection of pending, in-flight and finished operations."""

    def __init__(self, preview_factory: PreviewFactory | None = None) -> None:
        """Initialize UploadQueue.

        Args:
            preview_factory: Creates preview handles for queued images;
                defaults to temporary thumbnail files.
        """
        self._operations: dict[str, QueuedOperation] = {}
        self._preview_factory = preview_factory or create_image_preview
        self._sequence = count(1)
        self._changed = Signal()

    def queue_upload(
        self,
        file: UploadedFile,
        component_id: str | None = None,
        field_name: str | None = None,
    ) -> QueuedUpload:
        """Add a file to the upload queue.

        Image files get a preview handle. Failing to create one is
        logged and otherwise ignored.

        Args:
            file: File to upload on the next batch.
            component_id: Component owning the field, if known.
            field_name: Field that queued the file, if known.

        Returns:
            QueuedUpload with the operation ID and preview URL.
        """
        operation_id = self._generate_id()
        preview = self._create_preview(file)
        operation = QueuedOperation(
            id=operation_id,
            type=OperationType.UPLOAD,
            component_id=component_id,
            field_name=field_name,
            file=file,
            preview=preview,
        )
        self._operations[operation_id] = operation
        logger.info(
            'Queued upload %s: %s (%d bytes)',
            operation_id,
            file.name,
            file.size or 0,
        )
        self._notify()
        return QueuedUpload(id=operation_id, preview_url=operation.preview_url)

    def queue_deletion(
        self,
        url: str,
        component_id: str | None = None,
        field_name: str | None = None,
    ) -> str:
        """Add a stored file to the deletion queue.

        Args:
            url: URL of the file to delete on the next batch.
            component_id: Component owning the field, if known.
            field_name: Field that queued the deletion, if known.

        Returns:
            ID of the queued operation.
        """
        operation_id = self._generate_id()
        self._operations[operation_id] = QueuedOperation(
            id=operation_id,
            type=OperationType.DELETE,
            component_id=component_id,
            field_name=field_name,
            target_url=url,
        )
        logger.info('Queued deletion %s: %s', operation_id, url)
        self._notify()
        return operation_id

    def remove_operation(self, operation_id: str) -> bool:
        """Cancel an operation that has not started yet.

        Operations being processed cannot be removed: the transfer is
        already in flight.

        Args:
            operation_id: ID of the operation to remove.

        Returns:
            True if the operation was removed, False otherwise.
        """
        operation = self._operations.get(operation_id)
        if operation is None:
            return False
        if operation.status == OperationStatus.PROCESSING:
            logger.warning(
                'Cannot remove operation %s while it is processing',
                operation_id,
            )
            return False

        del self._operations[operation_id]
        self._release_previews((operation,))
        logger.info('Removed operation %s', operation_id)
        self._notify()
        return True

    def update_operation_status(
        self,
        operation_id: str,
        status: OperationStatus,
        error: str | None = None,
    ) -> None:
        """Move an operation to its next lifecycle state.

        Used by the upload manager while processing a batch. The error
        message is cleared whenever the status is not ERROR.

        Args:
            operation_id: ID of the operation to update.
            status: New status.
            error: Failure message for the ERROR status.

        Raises:
            InvalidStatusTransitionError: If the status would not move
                forward through pending, processing and a final state.
        """
        operation = self._operations.get(operation_id)
        if operation is None:
            return
        if status not in _ALLOWED_TRANSITIONS[operation.status]:
            raise InvalidStatusTransitionError(
                operation_id,
                operation.status,
                status,
            )

        operation.status = status
        operation.updated_at = timezone.now()
        operation.error = error if status == OperationStatus.ERROR else None
        self._notify()

    def get_operation(self, operation_id: str) -> QueuedOperation | None:
        """Get an operation by ID.

        Args:
            operation_id: ID to look up.

        Returns:
            QueuedOperation if found, None otherwise.
        """
        return self._operations.get(operation_id)

    def get_all_operations(self) -> list[QueuedOperation]:
        """Get every operation in insertion order."""
        return list(self._operations.values())

    def get_operations_by_type(self, operation_type: OperationType) -> list[QueuedOperation]:
        """Get operations of one type."""
        return [op for op in self._operations.values() if op.type == operation_type]

    def get_operations_by_status(self, status: OperationStatus) -> list[QueuedOperation]:
        """Get operations in one status."""
        return [op for op in self._operations.values() if op.status == status]

    def get_pending_uploads(self) -> list[QueuedOperation]:
        """Get uploads waiting for the next batch."""
        return self._pending(OperationType.UPLOAD)

    def get_pending_deletions(self) -> list[QueuedOperation]:
        """Get deletions waiting for the next batch."""
        return self._pending(OperationType.DELETE)

    def has_pending_operations(self) -> bool:
        """Check if any operation waits for processing."""
        return any(
            op.status == OperationStatus.PENDING
            for op in self._operations.values()
        )

    def get_stats(self) -> QueueStats:
        """Count operations by status and type.

        Returns:
            QueueStats for the current queue contents.
        """
        operations = self.get_all_operations()
        statuses = [op.status for op in operations]
        types = [op.type for op in operations]
        return QueueStats(
            total=len(operations),
            pending=statuses.count(OperationStatus.PENDING),
            processing=statuses.count(OperationStatus.PROCESSING),
            completed=statuses.count(OperationStatus.COMPLETED),
            error=statuses.count(OperationStatus.ERROR),
            uploads=types.count(OperationType.UPLOAD),
            deletions=types.count(OperationType.DELETE),
        )

    def get_queued_files(self) -> list[QueuedFile]:
        """Get every upload in the format used by upload fields."""
        return self.get_queued_files_for_field()

    def get_queued_files_for_field(
        self,
        component_id: str | None = None,
        field_name: str | None = None,
    ) -> list[QueuedFile]:
        """Get uploads queued by one field.

        Each supplied key must match; omitted keys match anything, so
        calling without arguments returns every upload.

        Args:
            component_id: Component to filter by.
            field_name: Field name to filter by.

        Returns:
            List of QueuedFile in insertion order.
        """
        return [
            QueuedFile.from_operation(op)
            for op in self.get_operations_by_type(OperationType.UPLOAD)
            if (not component_id or op.component_id == component_id)
            and (not field_name or op.field_name == field_name)
        ]

    def clear(self) -> None:
        """Remove every operation and release all previews."""
        self._remove_where(lambda _: True)

    def clear_completed(self) -> None:
        """Remove completed operations."""
        self._remove_where(lambda op: op.status == OperationStatus.COMPLETED)

    def clear_errors(self) -> None:
        """Remove failed operations."""
        self._remove_where(lambda op: op.status == OperationStatus.ERROR)

    def add_listener(self, listener: Listener) -> Unsubscribe:
        """Subscribe to queue changes.

        Listeners are called without arguments after every mutation.
        A listener raising an exception is logged and does not prevent
        the others from being called.

        Args:
            listener: Callable invoked on every change.

        Returns:
            Callable that removes the subscription.
        """
        def receiver(sender: object, **kwargs: object) -> None:  # noqa: WPS430
            listener()

        self._changed.connect(receiver, weak=False)
        return lambda: self._changed.disconnect(receiver)

    def _pending(self, operation_type: OperationType) -> list[QueuedOperation]:
        return [
            op
            for op in self._operations.values()
            if op.type == operation_type and op.status == OperationStatus.PENDING
        ]

    def _remove_where(self, predicate: Callable[[QueuedOperation], bool]) -> None:
        removed = [op for op in self._operations.values() if predicate(op)]
        if not removed:
            return

        for operation in removed:
            del self._operations[operation.id]
        self._release_previews(removed)
        logger.info('Cleared %d operations from queue', len(removed))
        self._notify()

    def _create_preview(self, file: UploadedFile) -> PreviewHandle | None:
        if not get_content_type(file).startswith('image/'):
            return None
        try:
            return self._preview_factory(file)
        except Exception as exc:
            logger.warning('Failed to create preview for %s: %s', file.name, exc)
            return None

    def _release_previews(self, operations: Iterable[QueuedOperation]) -> None:
        for operation in operations:
            if operation.preview is None:
                continue
            try:
                operation.preview.release()
            except Exception:
                logger.exception(
                    'Failed to release preview of operation %s',
                    operation.id,
                )

    def _generate_id(self) -> str:
        timestamp = int(timezone.now().timestamp() * 1000)
        return f'{timestamp}-{next(self._sequence)}-{secrets.token_hex(_ID_TOKEN_BYTES)}'

    def _notify(self) -> None:
        responses = self._changed.send_robust(sender=self)
        for _, response in responses:
            if isinstance(response, Exception):
                logger.error(
                    'Queue listener failed',
                    exc_info=(type(response), response, response.__traceback__),
                )
