"""Custom storage backend for S3-compatible storage."""

import logging
from typing import Any, final, override

from storages.backends.s3 import S3Storage
from storages.utils import clean_name

from server.apps.uploads.infrastructure.metadata import extract_file_path_from_url

logger = logging.getLogger(__name__)


@final
class UploadStorage(S3Storage):
    """S3 storage backend for files uploaded through the editor.

    Extends django-storages S3Storage with:
    - Presigned PUT URLs for direct client uploads
    - Mapping public file URLs back to object keys
    - Enhanced error logging
    """

    @override
    def save(  # noqa: WPS211
        self,
        name: str,
        content: Any,
        max_length: int | None = None,
    ) -> str:
        """Save file to S3 with error handling and logging.

        Args:
            name: Storage path for the file.
            content: File content (file-like object).
            max_length: Optional maximum length for the filename.

        Returns:
            Actual storage path used (may differ from name if conflicts).

        Raises:
            Exception: If S3 upload fails.
        """
        try:
            logger.info('Uploading file to storage: %s', name)
            saved_name = super().save(name, content, max_length)
            logger.info('Successfully uploaded file: %s', saved_name)
        except Exception:
            logger.exception('Failed to upload file to storage: %s', name)
            raise
        else:
            return saved_name

    @override
    def delete(self, name: str) -> None:
        """Delete file from S3 with error handling and logging.

        Args:
            name: Storage path of file to delete.

        Raises:
            Exception: If S3 delete fails.
        """
        try:
            logger.info('Deleting file from storage: %s', name)
            super().delete(name)
            logger.info('Successfully deleted file: %s', name)
        except Exception:
            logger.exception('Failed to delete file from storage: %s', name)
            raise

    def presigned_put_url(
        self,
        name: str,
        content_type: str,
        expires_in: int,
    ) -> str:
        """Generate a URL that lets a client PUT one object directly.

        Args:
            name: Storage path the client will write to.
            content_type: MIME type the client must send.
            expires_in: URL lifetime in seconds.

        Returns:
            Presigned PUT URL.
        """
        client = self.connection.meta.client
        return client.generate_presigned_url(
            'put_object',
            Params={
                'Bucket': self.bucket_name,
                'Key': self._normalize_name(clean_name(name)),
                'ContentType': content_type,
            },
            ExpiresIn=expires_in,
            HttpMethod='PUT',
        )

    def object_name_from_url(self, url: str) -> str | None:
        """Map a URL produced by ``url()`` back to a storage path.

        Strips the bucket name of path-style URLs and the configured
        ``location`` prefix, so the result can be passed to ``delete``.

        Args:
            url: Public or presigned URL of a stored file.

        Returns:
            Storage path, or None if the URL has no usable path.
        """
        path = extract_file_path_from_url(url)
        if path is None:
            return None

        bucket_prefix = f'{self.bucket_name}/'
        if path.startswith(bucket_prefix) and not self.custom_domain:
            path = path[len(bucket_prefix):]

        location = clean_name(self.location or '').strip('/')
        if location and path.startswith(f'{location}/'):
            path = path[len(location) + 1:]
        return path or None
