"""Transfer backend that writes straight to the S3-compatible bucket."""

import logging

from asgiref.sync import sync_to_async
from django.conf import settings
from django.core.files.storage import storages
from django.core.files.uploadedfile import UploadedFile

from server.apps.uploads.exceptions import TransferError, UnresolvableFileUrlError
from server.apps.uploads.infrastructure.metadata import build_object_key
from server.apps.uploads.infrastructure.storage import UploadStorage
from server.apps.uploads.infrastructure.transfer import (
    ConfigSource,
    PresignedUpload,
    TransferConfigStatus,
    UploadRequest,
)

logger = logging.getLogger(__name__)


def get_key_prefix() -> str:
    """Get the folder prefix for uploaded object keys.

    Returns:
        Prefix from settings or default of 'cms-uploads'.
    """
    return getattr(settings, 'UPLOAD_KEY_PREFIX', 'cms-uploads')


def get_presign_expires() -> int:
    """Get the lifetime of presigned upload URLs.

    Returns:
        Lifetime in seconds from settings or default of 3600.
    """
    return getattr(settings, 'UPLOAD_PRESIGN_EXPIRES', 3600)


class StorageTransferService:
    """Upload and delete files through the Django storage backend.

    Storage calls are blocking boto3 requests, so each one runs in a
    worker thread via ``sync_to_async``.
    """

    def __init__(
        self,
        storage: UploadStorage | None = None,
        *,
        key_prefix: str | None = None,
        expires_in: int | None = None,
    ) -> None:
        """Initialize StorageTransferService.

        Args:
            storage: Storage backend; the 'default' storage when omitted.
            key_prefix: Folder prefix for new object keys.
            expires_in: Lifetime of presigned URLs in seconds.
        """
        self._source = ConfigSource.ENVIRONMENT if storage is None else ConfigSource.CONFIG
        self._storage = storage or storages['default']
        self._key_prefix = get_key_prefix() if key_prefix is None else key_prefix
        self._expires_in = expires_in or get_presign_expires()

    def is_configured(self) -> bool:
        """Check if bucket name and credentials are set.

        Returns:
            True if transfers can be attempted.
        """
        return not self._missing_settings()

    def get_config_status(self) -> TransferConfigStatus:
        """Describe the storage configuration.

        Returns:
            TransferConfigStatus listing every missing setting.
        """
        missing = self._missing_settings()
        if missing:
            return TransferConfigStatus(
                configured=False,
                errors=[f'{name} is not set' for name in missing],
                source=ConfigSource.NONE,
            )
        return TransferConfigStatus(configured=True, source=self._source)

    async def get_presigned_upload_url(
        self,
        request: UploadRequest,
    ) -> PresignedUpload:
        """Presign a PUT for a new object.

        Args:
            request: Metadata of the file to upload.

        Returns:
            PresignedUpload pointing at a fresh object key.

        Raises:
            TransferError: If presigning fails.
        """
        file_path = build_object_key(request.file_name, self._key_prefix)
        try:
            upload_url = await sync_to_async(self._storage.presigned_put_url)(
                file_path,
                request.file_type,
                self._expires_in,
            )
            public_url = await sync_to_async(self._storage.url)(file_path)
        except Exception as exc:
            raise TransferError(f'Failed to get presigned URL: {exc}') from exc

        return PresignedUpload(
            upload_url=upload_url,
            file_path=file_path,
            public_url=public_url,
            expires_in=self._expires_in,
        )

    async def upload_file_complete(self, file: UploadedFile) -> str:
        """Save a file to the bucket.

        Args:
            file: File to upload.

        Returns:
            URL of the stored file.

        Raises:
            TransferError: If the upload fails.
        """
        file_path = build_object_key(file.name or 'file', self._key_prefix)
        try:
            file.seek(0)
            saved_name = await sync_to_async(self._storage.save)(file_path, file)
            return await sync_to_async(self._storage.url)(saved_name)
        except Exception as exc:
            raise TransferError(f'File upload failed: {exc}') from exc

    async def delete_file(self, url: str) -> None:
        """Delete a stored file.

        Args:
            url: URL previously returned by ``upload_file_complete``.

        Raises:
            TransferError: If the path cannot be resolved or deletion fails.
        """
        name = self._storage.object_name_from_url(url)
        if not name:
            raise UnresolvableFileUrlError(url)

        try:
            await sync_to_async(self._storage.delete)(name)
        except Exception as exc:
            raise TransferError(f'Failed to delete file: {exc}') from exc

    def _missing_settings(self) -> list[str]:
        required = (
            ('AWS_STORAGE_BUCKET_NAME', self._storage.bucket_name),
            ('AWS_ACCESS_KEY_ID', self._storage.access_key),
            ('AWS_SECRET_ACCESS_KEY', self._storage.secret_key),
        )
        return [name for name, setting_value in required if not setting_value]
