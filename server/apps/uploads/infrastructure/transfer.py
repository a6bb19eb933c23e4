"""Contract of the transfer service that moves files to object storage.

The upload manager only depends on ``TransferService``. Two backends
implement it:

- ``WorkerTransferService`` asks a presign worker for upload URLs, so
  bucket credentials never reach the editing process.
- ``StorageTransferService`` writes through the Django storage backend
  when the process holds the bucket credentials itself.
"""

import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from django.conf import settings
from django.core.files.uploadedfile import UploadedFile

from server.apps.uploads.infrastructure.metadata import get_content_type


class ConfigSource(enum.StrEnum):
    """Where a transfer backend took its configuration from."""

    ENVIRONMENT = 'environment'
    CONFIG = 'config'
    NONE = 'none'


@dataclass(frozen=True)
class TransferConfigStatus:
    """Self-reported configuration state of a transfer backend."""

    configured: bool
    errors: list[str] = field(default_factory=list)
    source: ConfigSource = ConfigSource.NONE


@dataclass(frozen=True)
class UploadRequest:
    """File metadata sent when requesting a presigned upload."""

    file_name: str
    file_size: int
    file_type: str

    @classmethod
    def for_file(cls, file: UploadedFile) -> 'UploadRequest':
        """Describe an uploaded file.

        Args:
            file: File about to be uploaded.

        Returns:
            UploadRequest with the file's name, size and MIME type.
        """
        return cls(
            file_name=file.name or 'file',
            file_size=file.size or 0,
            file_type=get_content_type(file),
        )

    def as_payload(self) -> dict[str, Any]:
        """Serialize for the presign worker.

        Returns:
            JSON-compatible dict with camelCase keys.
        """
        return {
            'fileName': self.file_name,
            'fileSize': self.file_size,
            'fileType': self.file_type,
        }


@dataclass(frozen=True)
class PresignedUpload:
    """Where and how to PUT one file."""

    upload_url: str
    file_path: str
    public_url: str
    expires_in: int
    upload_headers: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> 'PresignedUpload':
        """Parse a presign worker response.

        Args:
            payload: Decoded JSON body.

        Returns:
            PresignedUpload built from the response.

        Raises:
            KeyError: If a required key is missing.
        """
        return cls(
            upload_url=str(payload['uploadUrl']),
            file_path=str(payload['filePath']),
            public_url=str(payload['publicUrl']),
            expires_in=int(payload.get('expiresIn', 0)),
            upload_headers=dict(payload.get('uploadHeaders') or {}),
        )


class TransferService(Protocol):
    """Network boundary used by the upload manager."""

    def is_configured(self) -> bool:
        """Report whether transfers can be attempted at all."""

    def get_config_status(self) -> TransferConfigStatus:
        """Report configuration state with actionable errors."""

    async def get_presigned_upload_url(
        self,
        request: UploadRequest,
    ) -> PresignedUpload:
        """Obtain a presigned upload target for a file."""

    async def upload_file_complete(self, file: UploadedFile) -> str:
        """Upload a file and return its public URL."""

    async def delete_file(self, url: str) -> None:
        """Delete a stored file identified by its URL."""


def get_transfer_backend_name() -> str:
    """Get the configured transfer backend name.

    Returns:
        Backend name from settings or default of 'worker'.
    """
    return getattr(settings, 'UPLOAD_TRANSFER_BACKEND', 'worker')


def get_transfer_service() -> TransferService:
    """Build the transfer backend selected in settings.

    Returns:
        Transfer service instance.

    Raises:
        ValueError: If the configured backend name is unknown.
    """
    backend = get_transfer_backend_name()
    if backend == 'worker':
        from server.apps.uploads.infrastructure.worker_transfer import (  # noqa: WPS433
            WorkerTransferService,
        )
        return WorkerTransferService()
    if backend == 'storage':
        from server.apps.uploads.infrastructure.storage_transfer import (  # noqa: WPS433
            StorageTransferService,
        )
        return StorageTransferService()
    raise ValueError(f'Unknown upload transfer backend: {backend}')
