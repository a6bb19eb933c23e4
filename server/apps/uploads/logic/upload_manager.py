"""Orchestration of queued file operations for one editing session.

The upload manager sits between upload fields, the document save
pipeline and the transfer service:

- Fields queue uploads and deletions; images are optimized on the way in.
- The save pipeline checks readiness and runs ``process_queue`` once.
- Processing drains a snapshot of pending operations, deletions first,
  and reports every failure without aborting the batch.
"""

import asyncio
import logging
from typing import Any, Final

from django.core.files.uploadedfile import UploadedFile

from server.apps.uploads.entities import (
    BatchProcessResult,
    FileUploadError,
    OperationStatus,
    QueuedFile,
    QueuedOperation,
    QueuedUpload,
    QueueStatus,
    ReadinessReport,
    UploadedFileInfo,
)
from server.apps.uploads.exceptions import (
    ProcessingInProgressError,
    TransferServiceNotConfiguredError,
)
from server.apps.uploads.infrastructure.image_optimizer import (
    ImageOptimizationConfig,
    ImageOptimizer,
)
from server.apps.uploads.infrastructure.metadata import get_content_type
from server.apps.uploads.infrastructure.transfer import (
    TransferConfigStatus,
    TransferService,
)
from server.apps.uploads.logic.upload_queue import Listener, Unsubscribe, UploadQueue

_CANCELLED_MESSAGE: Final = 'Cancelled'

logger = logging.getLogger(__name__)


class UploadManager:
    """Public entry point of the upload engine.

    One instance is created per editing session and handed to whatever
    owns that session. Call ``dispose`` when the session ends.
    """

    def __init__(
        self,
        transfer_service: TransferService,
        queue: UploadQueue | None = None,
        optimizer: ImageOptimizer | None = None,
        optimization_config: ImageOptimizationConfig | None = None,
    ) -> None:
        """Initialize UploadManager.

        Args:
            transfer_service: Backend performing uploads and deletions.
            queue: Operation queue; a fresh one when omitted.
            optimizer: Image optimizer; built from
                ``optimization_config`` when omitted.
            optimization_config: Settings for the default optimizer.
        """
        self._transfer = transfer_service
        self._queue = queue or UploadQueue()
        self._optimizer = optimizer or ImageOptimizer(optimization_config)
        self._is_processing = False

    @property
    def is_processing(self) -> bool:
        """Whether a batch is currently in flight."""
        return self._is_processing

    def queue_upload(
        self,
        file: UploadedFile,
        component_id: str | None = None,
        field_name: str | None = None,
    ) -> QueuedUpload:
        """Queue a file for upload, optimizing images first.

        Args:
            file: File selected in an upload field.
            component_id: Component owning the field, if known.
            field_name: Field that queued the file, if known.

        Returns:
            QueuedUpload with the operation ID and preview URL.
        """
        if self._optimizer.would_benefit_from_optimization(file):
            result = self._optimizer.optimize_image(file)
            if result.fallback_used:
                logger.warning(
                    'Queueing %s with optimization fallback: %s',
                    file.name,
                    result.error or 'WebP not smaller than source',
                )
            file = result.optimized_file
        return self._queue.queue_upload(file, component_id, field_name)

    def queue_deletion(
        self,
        url: str,
        component_id: str | None = None,
        field_name: str | None = None,
    ) -> str:
        """Queue a stored file for deletion on the next save.

        Args:
            url: URL of the stored file.
            component_id: Component owning the field, if known.
            field_name: Field that removed the file, if known.

        Returns:
            ID of the queued operation.
        """
        return self._queue.queue_deletion(url, component_id, field_name)

    def remove_operation(self, operation_id: str) -> bool:
        """Cancel a pending operation."""
        return self._queue.remove_operation(operation_id)

    def clear_completed(self) -> None:
        """Drop operations that completed in earlier batches."""
        self._queue.clear_completed()

    def clear_errors(self) -> None:
        """Drop operations that failed in earlier batches."""
        self._queue.clear_errors()

    def clear_queue(self) -> None:
        """Drop every operation and release all previews."""
        self._queue.clear()

    def dispose(self) -> None:
        """Release everything held for the editing session."""
        logger.info('Disposing upload manager')
        self._queue.clear()

    def add_queue_listener(self, listener: Listener) -> Unsubscribe:
        """Subscribe to queue changes."""
        return self._queue.add_listener(listener)

    def get_queued_files(self) -> list[QueuedFile]:
        """Get every queued upload in the field format."""
        return self._queue.get_queued_files()

    def get_queued_files_for_field(
        self,
        component_id: str | None = None,
        field_name: str | None = None,
    ) -> list[QueuedFile]:
        """Get uploads queued by one field."""
        return self._queue.get_queued_files_for_field(component_id, field_name)

    def get_queue_status(self) -> QueueStatus:
        """Snapshot the queue for the save pipeline.

        Returns:
            QueueStatus with counts, operations and processing state.
        """
        return QueueStatus(
            stats=self._queue.get_stats(),
            operations=self._queue.get_all_operations(),
            is_processing=self._is_processing,
            has_pending_operations=self._queue.has_pending_operations(),
        )

    def update_image_optimization_config(self, **changes: Any) -> None:
        """Change optimizer settings for files queued from now on."""
        self._optimizer.update_config(**changes)

    def is_r2_configured(self) -> bool:
        """Check whether the transfer service is configured."""
        return self._transfer.is_configured()

    def get_r2_config_status(self) -> TransferConfigStatus:
        """Get the transfer service's configuration report."""
        return self._transfer.get_config_status()

    def validate_readiness(self) -> ReadinessReport:
        """Check whether a save can process the queue right now.

        Returns:
            ReadinessReport listing every blocking problem.
        """
        errors: list[str] = []

        if not self.is_r2_configured():
            config_status = self.get_r2_config_status()
            if config_status.errors:
                errors.append(f'R2 not configured: {"; ".join(config_status.errors)}')
            else:
                errors.append('R2 not configured')

        if self._is_processing:
            errors.append('Upload manager is currently processing operations')

        return ReadinessReport(ready=not errors, errors=errors)

    async def process_queue(self) -> BatchProcessResult:
        """Run every pending operation through the transfer service.

        Pending operations are captured when the call starts; anything
        queued afterwards waits for the next batch. Deletions run to
        completion before the first upload starts. A failing operation
        is recorded in the result and does not stop the others.

        Returns:
            BatchProcessResult with uploaded files and failures.

        Raises:
            ProcessingInProgressError: If another batch is in flight.
            TransferServiceNotConfiguredError: If the transfer service
                is not configured.
        """
        if self._is_processing:
            raise ProcessingInProgressError()

        self._is_processing = True
        try:
            if not self._transfer.is_configured():
                raise TransferServiceNotConfiguredError(
                    self._transfer.get_config_status().errors,
                )

            pending_deletions = self._queue.get_pending_deletions()
            pending_uploads = self._queue.get_pending_uploads()
            if not pending_deletions and not pending_uploads:
                return BatchProcessResult()

            logger.info(
                'Processing batch: %d deletions, %d uploads',
                len(pending_deletions),
                len(pending_uploads),
            )
            result = BatchProcessResult()
            for deletion in pending_deletions:
                if self._still_queued(deletion):
                    await self._process_deletion(deletion, result)
            for upload in pending_uploads:
                if self._still_queued(upload):
                    await self._process_upload(upload, result)
        finally:
            self._is_processing = False

        result.success = not result.errors
        result.partial_failure = bool(result.errors) and bool(result.uploaded_files)
        log = logger.warning if result.errors else logger.info
        log(
            'Batch finished: %d uploaded, %d failed',
            len(result.uploaded_files),
            len(result.errors),
        )
        return result

    def _still_queued(self, operation: QueuedOperation) -> bool:
        # Removed while an earlier operation of the batch was in flight
        if self._queue.get_operation(operation.id) is operation:
            return True
        logger.info('Skipping operation %s removed during batch', operation.id)
        return False

    async def _process_deletion(
        self,
        operation: QueuedOperation,
        result: BatchProcessResult,
    ) -> None:
        target_url = operation.target_url or ''
        self._queue.update_operation_status(operation.id, OperationStatus.PROCESSING)
        try:
            await self._transfer.delete_file(target_url)
        except asyncio.CancelledError:
            self._mark_cancelled(operation)
            raise
        except Exception as exc:
            logger.exception('Deletion %s failed: %s', operation.id, target_url)
            error = FileUploadError.from_exception(exc, target_url)
            result.errors.append(error)
            self._queue.update_operation_status(
                operation.id,
                OperationStatus.ERROR,
                error.message,
            )
        else:
            self._queue.update_operation_status(operation.id, OperationStatus.COMPLETED)

    async def _process_upload(
        self,
        operation: QueuedOperation,
        result: BatchProcessResult,
    ) -> None:
        file = operation.file
        file_name = file.name if file is not None else operation.id
        self._queue.update_operation_status(operation.id, OperationStatus.PROCESSING)
        try:
            url = await self._transfer.upload_file_complete(file)  # type: ignore[arg-type]
        except asyncio.CancelledError:
            self._mark_cancelled(operation)
            raise
        except Exception as exc:
            logger.exception('Upload %s failed: %s', operation.id, file_name)
            error = FileUploadError.from_exception(exc, file_name)
            result.errors.append(error)
            self._queue.update_operation_status(
                operation.id,
                OperationStatus.ERROR,
                error.message,
            )
            return

        self._queue.update_operation_status(operation.id, OperationStatus.COMPLETED)
        uploaded = UploadedFileInfo(
            url=url,
            name=file_name,
            size=file.size or 0,  # type: ignore[union-attr]
            type=get_content_type(file),  # type: ignore[arg-type]
            id=operation.id,
        )
        result.uploaded_files.append(uploaded)
        if operation.field_key is not None:
            result.uploaded_files_by_field.setdefault(operation.field_key, []).append(uploaded)

    def _mark_cancelled(self, operation: QueuedOperation) -> None:
        logger.warning('Operation %s cancelled mid-transfer', operation.id)
        self._queue.update_operation_status(
            operation.id,
            OperationStatus.ERROR,
            _CANCELLED_MESSAGE,
        )
