"""Management command to report upload transfer configuration."""

import logging
from typing import Any

from django.core.management.base import BaseCommand, CommandError

from server.apps.uploads.infrastructure.image_optimizer import ImageOptimizer
from server.apps.uploads.infrastructure.transfer import (
    get_transfer_backend_name,
    get_transfer_service,
)

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    """Check whether queued uploads could be processed right now."""

    help = 'Show upload transfer backend configuration'

    def add_arguments(self, parser: Any) -> None:
        """Add command line arguments.

        Args:
            parser: Argument parser.
        """
        parser.add_argument(
            '--skip-optimizer',
            action='store_true',
            help='Do not report image optimization settings',
        )

    def handle(self, *args: Any, **options: Any) -> None:
        """Execute the status command.

        Args:
            args: Positional arguments (unused).
            options: Command options.

        Raises:
            CommandError: If the backend is unknown or not configured.
        """
        backend = get_transfer_backend_name()
        try:
            service = get_transfer_service()
        except ValueError as exc:
            raise CommandError(str(exc)) from exc

        status = service.get_config_status()
        self.stdout.write(f'Transfer backend: {backend}')
        self.stdout.write(f'Configuration source: {status.source}')

        if not options['skip_optimizer']:
            optimizer = ImageOptimizer()
            config = optimizer.get_config()
            self.stdout.write(
                f'Image optimization: webp={config.enable_webp_conversion} '
                f'(encoder available: {optimizer.supports_webp()}), '
                f'quality={config.quality}, '
                f'max={config.max_width}x{config.max_height}',
            )

        if not status.configured:
            for error in status.errors:
                self.stderr.write(f'  - {error}')
            logger.warning('Upload backend %s not configured', backend)
            raise CommandError('Upload service not configured')

        self.stdout.write(self.style.SUCCESS('Upload service configured'))
