"""Environment variable override system."""

import copy
import logging
import os
from typing import Any, Dict, Mapping, Tuple

from .exceptions import InvalidOverrideError

logger = logging.getLogger(__name__)


class EnvironmentOverrides:
    """Applies environment variable overrides to a settings dictionary.

    Environment variable format:
    CHATRELAY__<KEY>__<NESTED_KEY>...

    Examples:
        - CHATRELAY__CLIENT_TO_USE=octoai -> settings["client_to_use"]
        - CHATRELAY__CLIENTS__OPENROUTER__API_KEY=sk -> settings["clients"]["openrouter"]["api_key"]
    """

    ENV_PREFIX = "CHATRELAY__"
    ENV_SEPARATOR = "__"

    def __init__(
        self,
        prefix: str | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        """Initialize the environment override handler.

        Args:
            prefix: Custom environment variable prefix (default: CHATRELAY__)
            environ: Mapping to read instead of os.environ
        """
        self.prefix = prefix or self.ENV_PREFIX
        self._environ = environ

    def get_overrides(self) -> Dict[Tuple[str, ...], Any]:
        """Get all environment variable overrides.

        Returns:
            Dictionary mapping key paths to typed override values
        """
        environ = self._environ if self._environ is not None else os.environ
        overrides: Dict[Tuple[str, ...], Any] = {}

        for key, value in environ.items():
            if not key.startswith(self.prefix):
                continue
            try:
                path = self._env_var_to_path(key)
            except InvalidOverrideError:
                logger.warning("Ignoring malformed settings override %s", key)
                continue
            overrides[path] = self._parse_value(value)

        return overrides

    def apply(self, settings: Dict[str, Any]) -> Dict[str, Any]:
        """Return a copy of ``settings`` with all overrides applied.

        Args:
            settings: Settings dictionary (not modified)

        Returns:
            New settings dictionary

        Raises:
            InvalidOverrideError: If an override path crosses a non-mapping value
        """
        result = copy.deepcopy(settings)
        for path, value in sorted(self.get_overrides().items()):
            target = result
            for part in path[:-1]:
                current = target.setdefault(part, {})
                if not isinstance(current, dict):
                    raise InvalidOverrideError(
                        f"Cannot override {'.'.join(path)}: '{part}' is not a mapping",
                        context={"path": list(path)},
                    )
                target = current
            target[path[-1]] = value
        return result

    def _env_var_to_path(self, env_var: str) -> Tuple[str, ...]:
        """Convert an environment variable name to a settings key path.

        Raises:
            InvalidOverrideError: If environment variable format is invalid
        """
        parts = env_var[len(self.prefix):].split(self.ENV_SEPARATOR)
        if not parts or any(not part for part in parts):
            raise InvalidOverrideError(f"Invalid environment variable format: {env_var}")
        return tuple(part.lower() for part in parts)

    def _parse_value(self, value: str) -> Any:
        """Parse an environment variable value to appropriate type.

        Args:
            value: String value from environment

        Returns:
            Parsed value (string, int, float, bool, or original string)
        """
        if value.lower() in ["true", "yes", "1"]:
            return True
        elif value.lower() in ["false", "no", "0"]:
            return False

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        return value
