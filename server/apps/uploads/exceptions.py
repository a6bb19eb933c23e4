"""Exceptions for uploads app."""


class UploadManagerError(Exception):
    """Base class for upload engine errors."""


class ProcessingInProgressError(UploadManagerError):
    """Raised when a batch is requested while another one is running."""

    def __init__(self) -> None:
        """Initialize ProcessingInProgressError."""
        super().__init__('Upload manager is already processing operations')


class TransferServiceNotConfiguredError(UploadManagerError):
    """Raised when the transfer service cannot reach any storage."""

    def __init__(self, errors: list[str] | None = None) -> None:
        """Initialize TransferServiceNotConfiguredError.

        Args:
            errors: Configuration problems reported by the service.
        """
        self.errors = list(errors or [])
        message = 'Upload service not configured'
        if self.errors:
            message = f'{message}: {"; ".join(self.errors)}'
        super().__init__(message)


class InvalidStatusTransitionError(UploadManagerError):
    """Raised when an operation status would move backwards."""

    def __init__(self, operation_id: str, current: str, requested: str) -> None:
        """Initialize InvalidStatusTransitionError.

        Args:
            operation_id: ID of the queued operation.
            current: Current status value.
            requested: Requested status value.
        """
        self.operation_id = operation_id
        self.current = current
        self.requested = requested
        super().__init__(
            f'Operation {operation_id} cannot move from '
            f'{current} to {requested}',
        )


class TransferError(UploadManagerError):
    """Raised when a presign, upload or delete call fails."""


class UnresolvableFileUrlError(TransferError):
    """Raised when a storage path cannot be derived from a file URL."""

    def __init__(self, url: str) -> None:
        """Initialize UnresolvableFileUrlError.

        Args:
            url: URL that could not be mapped to a storage path.
        """
        self.url = url
        super().__init__(f'Could not extract file path from URL: {url}')


class UploadServiceUnavailableError(UploadManagerError):
    """Raised by the save integration when the manager is not ready."""


class BatchUploadFailedError(UploadManagerError):
    """Raised by the save integration when every operation failed."""
