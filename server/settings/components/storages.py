"""Django storage configuration for S3-compatible backends.

This module configures django-storages to work with:
- MinIO for local development
- Cloudflare R2 for production

Both are S3-compatible and use the same S3Storage backend. Uploaded
editor files land in this bucket when the ``storage`` transfer backend
is selected.
"""

from typing import Any, Final

from server.settings.components import config

AWS_STORAGE_BUCKET_NAME: Final = config('AWS_STORAGE_BUCKET_NAME', default='')
AWS_ACCESS_KEY_ID: Final = config('AWS_ACCESS_KEY_ID', default='')
AWS_SECRET_ACCESS_KEY: Final = config('AWS_SECRET_ACCESS_KEY', default='')

# Storage configuration dictionary
# Uses S3-compatible storage for uploads, local storage for static files
STORAGES: Final[dict[str, dict[str, Any]]] = {
    'default': {
        'BACKEND': 'server.apps.uploads.infrastructure.storage.UploadStorage',
        'OPTIONS': {
            'bucket_name': AWS_STORAGE_BUCKET_NAME,
            'access_key': AWS_ACCESS_KEY_ID,
            'secret_key': AWS_SECRET_ACCESS_KEY,
            'endpoint_url': config(
                'AWS_S3_ENDPOINT_URL',
                default=None,
            ),
            'region_name': config(
                'AWS_S3_REGION_NAME',
                default='auto',
            ),
            'custom_domain': config(
                'AWS_S3_CUSTOM_DOMAIN',
                default=None,
            ),
            'file_overwrite': False,  # Prevent accidental overwrites
            'default_acl': None,  # Inherit bucket ACL
        },
    },
    'staticfiles': {
        'BACKEND': 'django.contrib.staticfiles.storage.StaticFilesStorage',
    },
}
