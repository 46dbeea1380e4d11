"""Gateway settings loading and per-message client option filtering."""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml  # type: ignore[import-untyped]

from .environment import EnvironmentOverrides
from .exceptions import ConfigError, ConfigFileNotFoundError

logger = logging.getLogger(__name__)

SETTINGS_ENV_VAR = "CHATRELAY_SETTINGS"
DEFAULT_SETTINGS_FILE = "settings.yaml"

DEFAULT_SETTINGS: Dict[str, Any] = {
    "client_to_use": "openrouter",
    "storage_file_path": None,
    "serialize_turns": False,
    "debug": False,
    "per_message_client_options_whitelist": None,
    "clients": {},
}


def load_settings(
    path: str | Path | None = None,
    apply_env: bool = True,
    environ: Mapping[str, str] | None = None,
) -> Dict[str, Any]:
    """Load gateway settings from a YAML file.

    The file is located by, in order: the ``path`` argument, the
    ``CHATRELAY_SETTINGS`` environment variable, then ``settings.yaml`` in the
    working directory. The implicit default file may be absent, in which case
    only the built-in defaults (plus environment overrides) apply.

    Args:
        path: Explicit settings file path
        apply_env: Whether to apply ``CHATRELAY__*`` environment overrides
        environ: Environment mapping to use instead of os.environ

    Returns:
        Settings dictionary with defaults filled in

    Raises:
        ConfigFileNotFoundError: If an explicitly named file does not exist
        ConfigError: If the file cannot be parsed or is not a mapping
    """
    env = environ if environ is not None else os.environ
    explicit = path is not None or SETTINGS_ENV_VAR in env
    settings_path = Path(path or env.get(SETTINGS_ENV_VAR) or DEFAULT_SETTINGS_FILE)

    data: Dict[str, Any] = {}
    if settings_path.exists():
        data = _read_yaml(settings_path)
        logger.info("Loaded settings from %s", settings_path)
    elif explicit:
        raise ConfigFileNotFoundError(
            f"Settings file not found: {settings_path}",
            context={"path": str(settings_path)},
        )

    settings = copy.deepcopy(DEFAULT_SETTINGS)
    settings.update(data)

    if apply_env:
        settings = EnvironmentOverrides(environ=environ).apply(settings)

    return settings


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Invalid settings file {path}: {e}",
            context={"path": str(path)},
        ) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Settings file {path} must contain a mapping, got {type(data).__name__}",
            context={"path": str(path)},
        )
    return data


def filter_client_options(
    options: Mapping[str, Any] | None,
    client_name: str,
    whitelist: Mapping[str, Any] | None,
) -> Dict[str, Any] | None:
    """Filter per-message client options against the configured whitelist.

    The whitelist maps a client name to the option keys callers may set for
    it. Keys may name a nested option as ``parent.child``. The special
    ``valid_clients_to_use`` entry lists the clients a caller may switch to
    with ``client_to_use``.

    Args:
        options: Options supplied with the message
        client_name: Client selected for the message so far
        whitelist: Whitelist settings, or None when per-message options are disabled

    Returns:
        Filtered options always carrying ``client_to_use``, or None when
        there are no options or no whitelist. A client without a whitelist
        entry receives every option.

    Example:
        >>> filter_client_options(
        ...     {"model_options": {"temperature": 0.5, "model": "x"}},
        ...     "openrouter",
        ...     {"openrouter": ["model_options.temperature"]},
        ... )
        {'client_to_use': 'openrouter', 'model_options': {'temperature': 0.5}}
    """
    if not options or not whitelist:
        return None

    requested = options.get("client_to_use")
    valid_clients = whitelist.get("valid_clients_to_use") or []
    if requested and requested in valid_clients:
        client_name = requested

    allowed_keys = whitelist.get(client_name)
    if not allowed_keys:
        result = dict(options)
        result["client_to_use"] = client_name
        return result

    filtered: Dict[str, Any] = {"client_to_use": client_name}
    for key, value in options.items():
        if key == "client_to_use":
            continue
        if key in allowed_keys:
            filtered[key] = value
        elif isinstance(value, Mapping):
            for nested_key, nested_value in value.items():
                if f"{key}.{nested_key}" in allowed_keys:
                    filtered.setdefault(key, {})[nested_key] = nested_value

    return filtered
