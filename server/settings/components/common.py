"""Core Django settings shared by every environment."""

from typing import Final

from server.settings.components import BASE_DIR, config

SECRET_KEY = config('DJANGO_SECRET_KEY', default='insecure-development-key')
DEBUG = config('DJANGO_DEBUG', cast=bool, default=False)

ALLOWED_HOSTS: Final = config(
    'DJANGO_ALLOWED_HOSTS',
    cast=lambda hosts: [host.strip() for host in hosts.split(',') if host],
    default='localhost',
)

INSTALLED_APPS: Final = (
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'storages',
    'server.apps.uploads',
)

# The upload engine keeps its state in memory, the database is only
# needed by Django internals.
DATABASES: Final = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': config(
            'DJANGO_DATABASE_NAME',
            default=str(BASE_DIR.joinpath('db.sqlite3')),
        ),
    },
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

USE_TZ = True
TIME_ZONE = 'UTC'
