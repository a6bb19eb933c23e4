"""Image optimization pipeline applied before files enter the queue.

Large photos are downscaled to the configured bounds and re-encoded
as WebP when that actually saves bytes. Every failure falls back to
the unmodified file so the queue always receives something it can
upload.
"""

import dataclasses
import io
import logging
from dataclasses import dataclass, field
from typing import Any, Final

from django.conf import settings
from django.core.files.uploadedfile import SimpleUploadedFile, UploadedFile
from PIL import Image, features

from server.apps.uploads.infrastructure.metadata import (
    get_content_type,
    read_file_bytes,
    replace_extension,
)

_WEBP_MIME_TYPE: Final = 'image/webp'

# Pillow encoder names by MIME type
_PILLOW_FORMATS: Final = {
    'image/jpeg': 'JPEG',
    'image/png': 'PNG',
    'image/webp': 'WEBP',
    'image/gif': 'GIF',
}

# Modes each encoder accepts without conversion
_ENCODER_MODES: Final = {
    'JPEG': frozenset(('RGB', 'L', 'CMYK')),
    'PNG': frozenset(('RGB', 'RGBA', 'L', 'LA', 'P', '1', 'I')),
    'WEBP': frozenset(('RGB', 'RGBA')),
    'GIF': frozenset(('P', 'L')),
}

logger = logging.getLogger(__name__)


@dataclass
class ImageOptimizationConfig:
    """Settings controlling resize and re-encoding of images."""

    enable_webp_conversion: bool = True
    quality: int = 85
    max_width: int | None = 1920
    max_height: int | None = 1080
    supported_formats: frozenset[str] = field(
        default_factory=lambda: frozenset(('image/jpeg', 'image/png')),
    )

    def __post_init__(self) -> None:
        """Validate and normalize the configuration.

        Raises:
            ValueError: If quality is outside 0-100.
        """
        if not 0 <= self.quality <= 100:
            raise ValueError(f'Quality must be between 0 and 100, got {self.quality}')
        self.supported_formats = frozenset(self.supported_formats)

    @classmethod
    def from_settings(cls, **overrides: Any) -> 'ImageOptimizationConfig':
        """Build configuration from Django settings.

        Args:
            overrides: Values taking precedence over settings.

        Returns:
            ImageOptimizationConfig with defaults, settings and overrides
            merged in that order.
        """
        values = dict(getattr(settings, 'UPLOAD_IMAGE_OPTIMIZATION', {}))
        values.update(overrides)
        return cls(**values)


@dataclass(frozen=True)
class OptimizationStrategy:
    """What the optimizer intends to do with one file."""

    should_optimize: bool
    should_convert_to_webp: bool
    should_resize: bool
    reason: str


@dataclass(frozen=True)
class OptimizationResult:
    """Outcome of ``ImageOptimizer.optimize_image``.

    ``optimized_file`` is always set: it is the original file whenever
    optimization was skipped or failed.
    """

    success: bool
    optimized_file: UploadedFile
    error: str | None = None
    fallback_used: bool = False


def calculate_optimal_dimensions(
    width: int,
    height: int,
    max_width: int | None = None,
    max_height: int | None = None,
) -> tuple[int, int]:
    """Fit dimensions inside the bounds while keeping the aspect ratio.

    Width is constrained first, then height; both results are rounded
    to whole pixels.

    Args:
        width: Current width in pixels.
        height: Current height in pixels.
        max_width: Maximum width, or None for no limit.
        max_height: Maximum height, or None for no limit.

    Returns:
        Tuple of target width and height.
    """
    target_width = float(width)
    target_height = float(height)

    if max_width and target_width > max_width:
        target_height = target_height * max_width / target_width
        target_width = max_width

    if max_height and target_height > max_height:
        target_width = target_width * max_height / target_height
        target_height = max_height

    return max(1, round(target_width)), max(1, round(target_height))


class ImageOptimizer:
    """Decide whether images need optimizing and perform it."""

    def __init__(self, config: ImageOptimizationConfig | None = None) -> None:
        """Initialize ImageOptimizer.

        Args:
            config: Optimization settings; read from Django settings
                when omitted.
        """
        self._config = config or ImageOptimizationConfig.from_settings()
        self._webp_supported: bool | None = None

    def get_config(self) -> ImageOptimizationConfig:
        """Get a copy of the current configuration.

        Returns:
            ImageOptimizationConfig that can be modified freely.
        """
        return dataclasses.replace(self._config)

    def update_config(self, **changes: Any) -> None:
        """Update selected configuration values.

        The WebP capability probe is repeated when WebP conversion is
        toggled.

        Args:
            changes: ImageOptimizationConfig fields to replace.
        """
        self._config = dataclasses.replace(self._config, **changes)
        if 'enable_webp_conversion' in changes:
            self._webp_supported = None

    def supports_webp(self) -> bool:
        """Check once whether Pillow can encode WebP.

        Returns:
            True if the WebP encoder is available.
        """
        if self._webp_supported is None:
            self._webp_supported = bool(features.check('webp'))
            logger.debug('WebP encoder available: %s', self._webp_supported)
        return self._webp_supported

    def would_benefit_from_optimization(self, file: UploadedFile) -> bool:
        """Check whether a file would be resized or re-encoded.

        Args:
            file: File about to be queued.

        Returns:
            True if ``optimize_image`` would transform the file.
        """
        return self.detect_optimization_strategy(file).should_optimize

    def detect_optimization_strategy(self, file: UploadedFile) -> OptimizationStrategy:
        """Work out which transforms apply to a file.

        Args:
            file: File about to be queued.

        Returns:
            OptimizationStrategy describing the planned transforms.
        """
        content_type = get_content_type(file)
        if content_type not in self._config.supported_formats:
            return OptimizationStrategy(
                should_optimize=False,
                should_convert_to_webp=False,
                should_resize=False,
                reason='File type not supported for optimization',
            )

        should_convert_to_webp = (
            self._config.enable_webp_conversion
            and content_type != _WEBP_MIME_TYPE
            and self.supports_webp()
        )

        should_resize = False
        try:
            width, height = self._read_dimensions(file)
        except Exception as exc:
            logger.warning('Failed to read dimensions of %s: %s', file.name, exc)
        else:
            should_resize = bool(
                (self._config.max_width and width > self._config.max_width)
                or (self._config.max_height and height > self._config.max_height),
            )

        actions = [
            action
            for action, planned in (
                ('convert to WebP', should_convert_to_webp),
                ('resize', should_resize),
            )
            if planned
        ]
        return OptimizationStrategy(
            should_optimize=bool(actions),
            should_convert_to_webp=should_convert_to_webp,
            should_resize=should_resize,
            reason=f'Will {" and ".join(actions)}' if actions else 'No optimization needed',
        )

    def optimize_image(self, file: UploadedFile) -> OptimizationResult:
        """Resize and re-encode an image, never raising.

        Args:
            file: Image file to optimize.

        Returns:
            OptimizationResult whose ``optimized_file`` is safe to upload.
        """
        try:
            return self._optimize(file)
        except Exception as exc:
            logger.warning(
                'Optimization failed for %s, using original: %s',
                file.name,
                exc,
            )
            return OptimizationResult(
                success=False,
                optimized_file=file,
                error=str(exc) or type(exc).__name__,
                fallback_used=True,
            )

    def resize_image(self, file: UploadedFile) -> UploadedFile:
        """Downscale an image to the configured bounds.

        The original format is kept.

        Args:
            file: Image file to resize.

        Returns:
            Resized file, or the same file if it already fits.

        Raises:
            OSError: If the image cannot be decoded or encoded.
        """
        content_type = get_content_type(file)
        with Image.open(io.BytesIO(read_file_bytes(file))) as image:
            width, height = calculate_optimal_dimensions(
                image.width,
                image.height,
                self._config.max_width,
                self._config.max_height,
            )
            if (width, height) == image.size:
                return file

            logger.info(
                'Resizing %s from %dx%d to %dx%d',
                file.name,
                image.width,
                image.height,
                width,
                height,
            )
            resized = image.resize((width, height), Image.Resampling.LANCZOS)
            content = self._encode(resized, _PILLOW_FORMATS[content_type])

        return SimpleUploadedFile(file.name, content, content_type=content_type)

    def convert_to_webp(self, file: UploadedFile) -> UploadedFile:
        """Re-encode an image as WebP within the configured bounds.

        Args:
            file: Image file to convert.

        Returns:
            New WebP file named after the original.

        Raises:
            OSError: If the image cannot be decoded or encoded.
        """
        with Image.open(io.BytesIO(read_file_bytes(file))) as image:
            size = calculate_optimal_dimensions(
                image.width,
                image.height,
                self._config.max_width,
                self._config.max_height,
            )
            if size != image.size:
                image = image.resize(size, Image.Resampling.LANCZOS)
            content = self._encode(image, 'WEBP')

        return SimpleUploadedFile(
            replace_extension(file.name, 'webp'),
            content,
            content_type=_WEBP_MIME_TYPE,
        )

    def _optimize(self, file: UploadedFile) -> OptimizationResult:
        strategy = self.detect_optimization_strategy(file)
        if not strategy.should_optimize:
            return OptimizationResult(success=True, optimized_file=file)

        logger.debug('%s: %s', file.name, strategy.reason)
        processed = file
        stage_error: str | None = None

        if strategy.should_resize:
            try:
                processed = self.resize_image(processed)
            except Exception as exc:
                logger.warning('Resizing failed for %s, continuing: %s', file.name, exc)
                stage_error = str(exc)

        if strategy.should_convert_to_webp:
            try:
                webp_file = self.convert_to_webp(processed)
            except Exception as exc:
                logger.warning('WebP conversion failed for %s: %s', file.name, exc)
                stage_error = str(exc)
            else:
                if webp_file.size < processed.size:
                    processed = webp_file
                else:
                    logger.info(
                        'WebP version of %s is not smaller (%d >= %d bytes), '
                        'keeping original format',
                        file.name,
                        webp_file.size,
                        processed.size,
                    )

        converted = get_content_type(processed) == _WEBP_MIME_TYPE
        return OptimizationResult(
            success=True,
            optimized_file=processed,
            error=stage_error,
            fallback_used=stage_error is not None or (
                strategy.should_convert_to_webp and not converted
            ),
        )

    def _encode(self, image: Image.Image, image_format: str) -> bytes:
        accepted_modes = _ENCODER_MODES.get(image_format)
        if accepted_modes and image.mode not in accepted_modes:
            target_mode = 'RGBA' if 'A' in image.mode and 'RGBA' in accepted_modes else 'RGB'
            if image_format == 'GIF':
                target_mode = 'P'
            image = image.convert(target_mode)

        buffer = io.BytesIO()
        save_options: dict[str, Any] = {}
        if image_format in {'JPEG', 'WEBP'}:
            save_options['quality'] = self._config.quality
        if image_format in {'JPEG', 'PNG'}:
            save_options['optimize'] = True
        image.save(buffer, format=image_format, **save_options)
        return buffer.getvalue()

    def _read_dimensions(self, file: UploadedFile) -> tuple[int, int]:
        with Image.open(io.BytesIO(read_file_bytes(file))) as image:
            return image.size
