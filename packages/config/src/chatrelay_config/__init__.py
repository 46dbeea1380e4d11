"""Settings loading for the chatrelay gateway.

Example:
    ```python
    from chatrelay_config import load_settings

    settings = load_settings("settings.yaml")
    print(settings["client_to_use"])
    ```
"""

from .environment import EnvironmentOverrides
from .exceptions import ConfigError, ConfigFileNotFoundError, InvalidOverrideError
from .settings import DEFAULT_SETTINGS, filter_client_options, load_settings

__version__ = "0.1.0"

__all__ = [
    "ConfigError",
    "ConfigFileNotFoundError",
    "DEFAULT_SETTINGS",
    "EnvironmentOverrides",
    "InvalidOverrideError",
    "filter_client_options",
    "load_settings",
]
