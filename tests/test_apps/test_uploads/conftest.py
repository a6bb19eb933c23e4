"""Shared fixtures for uploads app tests."""

import asyncio
import io
from collections.abc import Callable
from typing import Final

import boto3
import pytest
from django.core.files.uploadedfile import SimpleUploadedFile, UploadedFile
from moto import mock_aws
from PIL import Image

from server.apps.uploads.entities import PreviewHandle
from server.apps.uploads.exceptions import TransferError
from server.apps.uploads.infrastructure.image_optimizer import (
    ImageOptimizationConfig,
)
from server.apps.uploads.infrastructure.storage import UploadStorage
from server.apps.uploads.infrastructure.transfer import (
    ConfigSource,
    PresignedUpload,
    TransferConfigStatus,
    UploadRequest,
)
from server.apps.uploads.logic.upload_manager import UploadManager
from server.apps.uploads.logic.upload_queue import UploadQueue

TEST_BUCKET: Final = 'editor-uploads'
PUBLIC_BASE_URL: Final = 'https://cdn.example.com/cms-uploads'

_IMAGE_CONTENT_TYPES: Final = {
    'JPEG': 'image/jpeg',
    'PNG': 'image/png',
    'WEBP': 'image/webp',
    'GIF': 'image/gif',
}


class FakeTransferService:
    """In-memory transfer service recording every call."""

    def __init__(self, configured: bool = True, errors: list[str] | None = None):
        self.configured = configured
        self.errors = errors or []
        self.calls: list[tuple[str, str]] = []
        self.uploaded: list[UploadedFile] = []
        self.failing: set[str] = set()
        self.gate: asyncio.Event | None = None

    def is_configured(self) -> bool:
        return self.configured

    def get_config_status(self) -> TransferConfigStatus:
        if not self.configured:
            return TransferConfigStatus(configured=False, errors=self.errors)
        return TransferConfigStatus(configured=True, source=ConfigSource.CONFIG)

    async def get_presigned_upload_url(self, request: UploadRequest) -> PresignedUpload:
        return PresignedUpload(
            upload_url=f'https://upload.example.com/{request.file_name}',
            file_path=f'cms-uploads/{request.file_name}',
            public_url=f'{PUBLIC_BASE_URL}/{request.file_name}',
            expires_in=3600,
        )

    async def upload_file_complete(self, file: UploadedFile) -> str:
        self.calls.append(('upload', file.name))
        if self.gate is not None:
            await self.gate.wait()
        if file.name in self.failing:
            raise TransferError(f'File upload failed: {file.name} rejected')
        self.uploaded.append(file)
        return f'{PUBLIC_BASE_URL}/{file.name}'

    async def delete_file(self, url: str) -> None:
        self.calls.append(('delete', url))
        if self.gate is not None:
            await self.gate.wait()
        if url in self.failing:
            raise TransferError('Failed to delete file: object is locked')


class PreviewRecorder:
    """Preview factory counting created and released handles."""

    def __init__(self):
        self.created: list[str] = []
        self.released: list[str] = []

    def __call__(self, file: UploadedFile) -> PreviewHandle:
        url = f'preview://{len(self.created)}/{file.name}'
        self.created.append(url)
        return PreviewHandle(url, lambda: self.released.append(url))


@pytest.fixture
def make_image() -> Callable[..., SimpleUploadedFile]:
    """Build in-memory image uploads.

    Returns:
        Factory taking size, Pillow format and optional name.
    """
    def factory(  # noqa: WPS430
        width: int = 64,
        height: int = 48,
        image_format: str = 'JPEG',
        name: str | None = None,
        mode: str = 'RGB',
    ) -> SimpleUploadedFile:
        buffer = io.BytesIO()
        Image.new(mode, (width, height), color='teal').save(buffer, format=image_format)
        extension = image_format.lower().replace('jpeg', 'jpg')
        return SimpleUploadedFile(
            name or f'image.{extension}',
            buffer.getvalue(),
            content_type=_IMAGE_CONTENT_TYPES[image_format],
        )

    return factory


@pytest.fixture
def text_file() -> SimpleUploadedFile:
    """Non-image upload.

    Returns:
        Plain text SimpleUploadedFile.
    """
    return SimpleUploadedFile('notes.txt', b'meeting notes', content_type='text/plain')


@pytest.fixture
def transfer() -> FakeTransferService:
    """Configured in-memory transfer service.

    Returns:
        FakeTransferService instance.
    """
    return FakeTransferService()


@pytest.fixture
def previews() -> PreviewRecorder:
    """Preview factory that records releases.

    Returns:
        PreviewRecorder instance.
    """
    return PreviewRecorder()


@pytest.fixture
def queue(previews: PreviewRecorder) -> UploadQueue:
    """Operation queue using the recording preview factory.

    Returns:
        Empty UploadQueue.
    """
    return UploadQueue(preview_factory=previews)


@pytest.fixture
def manager(transfer: FakeTransferService, queue: UploadQueue) -> UploadManager:
    """Upload manager with WebP conversion disabled.

    Returns:
        UploadManager wired to the fake transfer service.
    """
    return UploadManager(
        transfer,
        queue=queue,
        optimization_config=ImageOptimizationConfig(enable_webp_conversion=False),
    )


@pytest.fixture
def mock_s3():
    """Mock S3 service with the uploads bucket.

    Yields:
        boto3 S3 resource with the uploads bucket created.
    """
    with mock_aws():
        conn = boto3.resource('s3', region_name='us-east-1')
        conn.create_bucket(Bucket=TEST_BUCKET)

        yield conn


@pytest.fixture
def upload_storage(mock_s3) -> UploadStorage:
    """Storage backend pointed at the mocked bucket.

    Returns:
        UploadStorage with test credentials.
    """
    return UploadStorage(
        bucket_name=TEST_BUCKET,
        access_key='testing',
        secret_key='testing',
        region_name='us-east-1',
        endpoint_url=None,
        custom_domain=None,
    )
