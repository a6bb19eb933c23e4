"""Transfer backend that uploads through a presign worker.

The worker holds the bucket credentials. It hands out presigned
upload URLs on ``POST /upload`` and deletes objects on
``DELETE /file/<path>``.
"""

import logging
from typing import Final

import httpx
from django.conf import settings
from django.core.files.uploadedfile import UploadedFile

from server.apps.uploads.exceptions import TransferError, UnresolvableFileUrlError
from server.apps.uploads.infrastructure.metadata import (
    extract_file_path_from_url,
    get_content_type,
    read_file_bytes,
)
from server.apps.uploads.infrastructure.transfer import (
    ConfigSource,
    PresignedUpload,
    TransferConfigStatus,
    UploadRequest,
)

_UPLOAD_ENDPOINT: Final = 'upload'
_FILE_ENDPOINT: Final = 'file'
_NOT_CONFIGURED_MESSAGE: Final = (
    'Upload worker URL not configured. '
    'Set UPLOAD_WORKER_URL environment variable.'
)

logger = logging.getLogger(__name__)


def get_worker_url() -> str:
    """Get the presign worker base URL.

    Returns:
        Worker URL from settings or empty string.
    """
    return getattr(settings, 'UPLOAD_WORKER_URL', '') or ''


def get_transfer_timeout() -> float:
    """Get the HTTP timeout for worker calls.

    Returns:
        Timeout in seconds from settings or default of 30.
    """
    return getattr(settings, 'UPLOAD_TRANSFER_TIMEOUT', 30.0)


class WorkerTransferService:
    """Upload and delete files through the presign worker."""

    def __init__(
        self,
        worker_url: str | None = None,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize WorkerTransferService.

        Args:
            worker_url: Worker base URL; read from settings when omitted.
            timeout: HTTP timeout in seconds.
            transport: Custom httpx transport (used by tests).
        """
        if worker_url is None:
            self._worker_url = get_worker_url()
            self._source = ConfigSource.ENVIRONMENT
        else:
            self._worker_url = worker_url
            self._source = ConfigSource.CONFIG
        self._timeout = timeout if timeout is not None else get_transfer_timeout()
        self._transport = transport

    def is_configured(self) -> bool:
        """Check if the worker URL is set.

        Returns:
            True if transfers can be attempted.
        """
        return bool(self._worker_url)

    def get_config_status(self) -> TransferConfigStatus:
        """Describe the worker configuration.

        Returns:
            TransferConfigStatus with setup instructions when missing.
        """
        if not self.is_configured():
            return TransferConfigStatus(
                configured=False,
                errors=[_NOT_CONFIGURED_MESSAGE],
                source=ConfigSource.NONE,
            )
        return TransferConfigStatus(configured=True, source=self._source)

    async def get_presigned_upload_url(
        self,
        request: UploadRequest,
    ) -> PresignedUpload:
        """Ask the worker for a presigned upload URL.

        Args:
            request: Metadata of the file to upload.

        Returns:
            PresignedUpload returned by the worker.

        Raises:
            TransferError: If the worker is unreachable or rejects the call.
        """
        async with self._client() as client:
            return await self._request_presigned_upload(client, request)

    async def upload_file(
        self,
        file: UploadedFile,
        presigned: PresignedUpload,
    ) -> str:
        """PUT a file to a presigned URL.

        Args:
            file: File to upload.
            presigned: Target obtained from ``get_presigned_upload_url``.

        Returns:
            URL of the stored file.

        Raises:
            TransferError: If the upload fails.
        """
        async with self._client() as client:
            return await self._put_file(client, file, presigned)

    async def upload_file_complete(self, file: UploadedFile) -> str:
        """Obtain a presigned URL and upload a file to it.

        Args:
            file: File to upload.

        Returns:
            URL of the stored file.

        Raises:
            TransferError: If presigning or uploading fails.
        """
        async with self._client() as client:
            presigned = await self._request_presigned_upload(
                client,
                UploadRequest.for_file(file),
            )
            return await self._put_file(client, file, presigned)

    async def delete_file(self, url: str) -> None:
        """Delete a stored file through the worker.

        Args:
            url: Proxy or direct storage URL of the file.

        Raises:
            TransferError: If the path cannot be resolved or the call fails.
        """
        self._ensure_configured()
        # Kept percent-encoded so reserved characters stay part of the key
        file_path = extract_file_path_from_url(url, decode=False)
        if not file_path:
            raise UnresolvableFileUrlError(url)

        endpoint = self._endpoint(f'{_FILE_ENDPOINT}/{file_path}')
        logger.info('Deleting file through worker: %s', file_path)
        try:
            async with self._client() as client:
                response = await client.delete(endpoint)
        except httpx.HTTPError as exc:
            raise TransferError(f'Failed to delete file: {exc}') from exc

        if response.is_error:
            raise TransferError(
                'Failed to delete file: delete request failed: '
                f'{response.status_code} {response.text}',
            )

        try:
            result = response.json()
        except ValueError:
            # Plain-text or empty bodies count as success on 2xx
            return
        if isinstance(result, dict) and result.get('success') is False:
            raise TransferError(
                'Failed to delete file: '
                f'{result.get("message") or "Delete operation failed"}',
            )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def _endpoint(self, path: str) -> str:
        return f'{self._worker_url.rstrip("/")}/{path}'

    def _ensure_configured(self) -> None:
        if not self.is_configured():
            raise TransferError('Upload worker not configured')

    async def _request_presigned_upload(
        self,
        client: httpx.AsyncClient,
        request: UploadRequest,
    ) -> PresignedUpload:
        self._ensure_configured()
        try:
            response = await client.post(
                self._endpoint(_UPLOAD_ENDPOINT),
                json=request.as_payload(),
            )
        except httpx.HTTPError as exc:
            raise TransferError(f'Failed to get presigned URL: {exc}') from exc

        if response.is_error:
            raise TransferError(
                'Failed to get presigned URL: worker request failed: '
                f'{response.status_code} {response.text}',
            )

        try:
            return PresignedUpload.from_payload(response.json())
        except (ValueError, KeyError, TypeError) as exc:
            raise TransferError(
                f'Failed to get presigned URL: malformed worker response: {exc}',
            ) from exc

    async def _put_file(
        self,
        client: httpx.AsyncClient,
        file: UploadedFile,
        presigned: PresignedUpload,
    ) -> str:
        content_type = get_content_type(file)
        headers = {
            'Content-Type': content_type,
            'X-File-Path': presigned.file_path,
            'X-File-Type': content_type,
            **presigned.upload_headers,
        }
        logger.info('Uploading %s to %s', file.name, presigned.file_path)
        try:
            response = await client.put(
                presigned.upload_url,
                content=read_file_bytes(file),
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise TransferError(f'File upload failed: {exc}') from exc

        if response.is_error:
            raise TransferError(
                f'File upload failed: {response.status_code} {response.text}',
            )

        try:
            result = response.json()
        except ValueError:
            return presigned.public_url
        if isinstance(result, dict) and result.get('url'):
            return str(result['url'])
        return presigned.public_url
