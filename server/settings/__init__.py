"""Django settings for the server project.

Settings are split into components, each owning one concern.
Values that differ between environments are read with ``config``
from the environment or a ``.env`` file.
"""

from server.settings.components.common import *  # noqa: F403, WPS347
from server.settings.components.logging import *  # noqa: F403, WPS347
from server.settings.components.storages import *  # noqa: F403, WPS347
from server.settings.components.uploads import *  # noqa: F403, WPS347
