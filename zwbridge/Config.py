"""Settings for the Z-Wave/Qth bridge.

Settings come from three places, first match wins:
1. command line options
2. the 'general' section of a YAML config file
3. DEFAULT_CONFIG

The YAML 'general' section is a list of single-key mappings:

    general:
      - mqtt_server: broker.lan
      - mqtt_port: 1883
      - qth_prefix: sys/zwave/
"""

# std libraries
from typing import Any, Dict, Optional

# external libraries
import yaml

# personal libraries
from .log import LOGGER

DEFAULT_CONFIG = {
    'mqtt_server': 'localhost',
    'mqtt_port': 1883,
    'mqtt_user': None,
    'mqtt_password': None,
    'qth_prefix': 'sys/zwave/',
    'client_id': 'qth_zwave',
    'zwave_server': 'ws://localhost:3000',
}

STR_KEYS = ('mqtt_server', 'mqtt_user', 'mqtt_password', 'qth_prefix', 'client_id', 'zwave_server')
INT_KEYS = ('mqtt_port',)


class ConfigError(Exception):
    """Raised when the configuration cannot be loaded or is invalid."""


def load_config_file(path: Optional[str]) -> Dict[str, Any]:
    """Load the 'general' section of a YAML config file.

    The section is converted from a list of dictionaries to a flat
    dictionary for easier access.

    Args:
        path: Path of the YAML file; None or empty means no file.

    Returns:
        Dict[str, Any]: Flat general settings, empty when there is no file.

    Raises:
        ConfigError: If the file cannot be opened, parsed, or is malformed.
    """
    if not path:
        return {}
    try:
        with open(path, 'r', encoding='utf-8') as file:
            config_yaml = yaml.safe_load(file)
    except (OSError, yaml.YAMLError) as ex:
        error_type = "open" if isinstance(ex, OSError) else "parse"
        raise ConfigError(f"Failed to {error_type} {path}: {ex}") from ex

    if config_yaml is None:
        LOGGER.warning(f"Config file {path} is empty")
        return {}
    if not isinstance(config_yaml, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    general = config_yaml.get("general") or []
    if not isinstance(general, list) or not all(isinstance(d, dict) for d in general):
        raise ConfigError(f"Config file {path}: general must be a list of mappings")
    LOGGER.info(f"general = {general}")
    return {k: v for d in general for k, v in d.items()}


def get_str(*args: Optional[Any]) -> Optional[str]:
    """Get the first string value from a list of arguments.

    Returns:
        Optional[str]: First string found, or None if no string exists.
    """
    for val in args:
        if isinstance(val, str):
            return val
    return None


def get_int(*args: Optional[Any]) -> Optional[int]:
    """Get the first integer value from a list of arguments.

    Strings made only of digits count as integers; booleans do not.

    Returns:
        Optional[int]: First integer found, or None if no valid integer exists.
    """
    for val in args:
        if isinstance(val, int) and not isinstance(val, bool):
            return val
        if isinstance(val, str) and val.isdigit():
            return int(val)
    return None


def build_settings(options: Dict[str, Any], general: Dict[str, Any]) -> Dict[str, Any]:
    """Resolve every setting with the options > general > defaults fallback.

    Args:
        options: Values given on the command line (None when not given).
        general: Flat 'general' section from the config file.

    Returns:
        Dict[str, Any]: Complete settings.

    Raises:
        ConfigError: If a setting has an invalid value.
    """
    settings: Dict[str, Any] = {}
    for key in STR_KEYS:
        settings[key] = get_str(options.get(key), general.get(key), DEFAULT_CONFIG[key])
    for key in INT_KEYS:
        given = [v for v in (options.get(key), general.get(key)) if v is not None]
        value = get_int(*given, DEFAULT_CONFIG[key])
        if given and value != get_int(given[0]):
            raise ConfigError(f"{key} must be an integer, got {given[0]!r}")
        settings[key] = value

    if not 0 < settings['mqtt_port'] < 65536:
        raise ConfigError(f"mqtt_port out of range: {settings['mqtt_port']}")
    if settings['qth_prefix'] and not settings['qth_prefix'].endswith('/'):
        settings['qth_prefix'] += '/'
    return settings
