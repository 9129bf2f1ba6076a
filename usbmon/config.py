"""Configuration loader and validator for usbmon.

Provides ``load_config(path)`` which reads a JSON config (with
comment and trailing-comma tolerant sanitizer) and merges user
overrides from ``~/.config/usbmon/config.json``.

Also provides ``validate_config(conf)`` which normalizes and
validates config keys, raising ``ValueError`` on invalid values.
"""

from __future__ import annotations

import json
import logging
import os
import re

from usbmon.persistence import save_json
from usbmon.usb.device_filter import DeviceFilter, load_filters

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = '~/.config/usbmon/config.json'

# Single source of truth for default configuration
DEFAULT_CONFIG: dict = {
    'debug': False,
    'initial_check_delay': 1.0,
    'check_interval': 2.0,
    'extended_identity': True,
    'filters': [],
    'auto_request_permission': False,
    'permission_helper': None,
    'worker_queue_size': 1024,
}


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def _sanitize_json_text(s: str) -> str:
    """Remove ``#``/``//`` comments and trailing commas from JSON-like text."""
    # Hash-style line comments
    s = re.sub(r"^[ \t]*#.*$", "", s, flags=re.MULTILINE)
    # C++-style line comments (only when not inside a string on that line)
    s = re.sub(r"^([^\"\n]*(?:\"[^\"\n]*\"[^\"\n]*)*)//.*$", r"\1", s, flags=re.MULTILINE)
    # Trailing commas before } or ]
    s = re.sub(r",[ \t\r\n]+(\}|\])", r"\1", s)
    return s


def _float_in_range(conf: dict, key: str, lo: float, hi: float) -> float:
    raw = conf.get(key, DEFAULT_CONFIG[key])
    if isinstance(raw, bool):
        raise ValueError(f"Invalid '{key}': {raw}")
    try:
        val = float(raw)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid '{key}': {raw}")
    if not (lo <= val <= hi):
        raise ValueError(f"Invalid '{key}': {raw} (must be between {lo} and {hi})")
    return val


def _bool(conf: dict, key: str) -> bool:
    val = conf.get(key, DEFAULT_CONFIG[key])
    if not isinstance(val, bool):
        raise ValueError(f"Invalid '{key}': must be boolean")
    return val


# ------------------------------------------------------------------
# Validation
# ------------------------------------------------------------------

def validate_config(conf: dict | None) -> dict:
    """Validate and normalize configuration dictionary.

    Returns a normalized dict with all expected keys.
    Raises ``ValueError`` on invalid values.
    """
    if conf is None:
        conf = {}

    out = dict(DEFAULT_CONFIG)

    out['debug'] = _bool(conf, 'debug')
    out['initial_check_delay'] = _float_in_range(conf, 'initial_check_delay', 0.05, 60.0)
    out['check_interval'] = _float_in_range(conf, 'check_interval', 0.1, 600.0)
    out['extended_identity'] = _bool(conf, 'extended_identity')
    out['auto_request_permission'] = _bool(conf, 'auto_request_permission')

    # filters — list of filter dicts, each must parse
    filters = conf.get('filters', DEFAULT_CONFIG['filters'])
    if not isinstance(filters, list):
        raise ValueError("Invalid 'filters': must be a list")
    try:
        load_filters(filters)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid 'filters': {exc}")
    out['filters'] = list(filters)

    # permission_helper — null or non-empty list of strings
    helper = conf.get('permission_helper', DEFAULT_CONFIG['permission_helper'])
    if helper is not None:
        if not isinstance(helper, list) or not helper or not all(isinstance(a, str) for a in helper):
            raise ValueError("Invalid 'permission_helper': must be null or a non-empty list of strings")
        helper = list(helper)
    out['permission_helper'] = helper

    # worker_queue_size — int >= 1
    wqs = conf.get('worker_queue_size', DEFAULT_CONFIG['worker_queue_size'])
    if isinstance(wqs, bool):
        raise ValueError(f"Invalid 'worker_queue_size': {wqs}")
    try:
        wqs_i = int(wqs)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid 'worker_queue_size': {wqs}")
    if wqs_i < 1:
        raise ValueError("Invalid 'worker_queue_size': must be >= 1")
    out['worker_queue_size'] = wqs_i

    return out


def config_filters(conf: dict) -> list[DeviceFilter]:
    """DeviceFilter objects for the ``filters`` key of a validated config."""
    return load_filters(conf.get('filters') or [])


def monitor_options(conf: dict) -> dict:
    """Keyword arguments for ``USBMonitor`` taken from a validated config."""
    return {
        'filters': config_filters(conf),
        'initial_check_delay': conf['initial_check_delay'],
        'check_interval': conf['check_interval'],
        'extended_identity': conf['extended_identity'],
        'max_pending': conf['worker_queue_size'],
        'debug': conf['debug'],
    }


def _read_and_merge(path: str, target_config: dict, debug: bool = False) -> bool:
    """Read a JSON file, validate, and merge into *target_config*.

    Returns True on success, False on any error.
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            raw = f.read()
    except OSError as exc:
        logger.debug("Cannot read %s: %s", path, exc)
        return False

    try:
        cfg = json.loads(raw)
    except json.JSONDecodeError:
        try:
            cfg = json.loads(_sanitize_json_text(raw))
        except json.JSONDecodeError as exc:
            logger.warning("JSON parse error in %s: %s", path, exc)
            return False

    if not isinstance(cfg, dict):
        logger.warning("Invalid config %s: top level must be an object", path)
        return False

    try:
        validated = validate_config(cfg)
    except ValueError as verr:
        logger.warning("Invalid config %s: %s", path, verr)
        return False

    # Only override keys explicitly present in source
    for k in cfg:
        if k in validated:
            target_config[k] = validated[k]
        elif debug:
            logger.debug("Ignoring unknown config key %r in %s", k, path)
    return True


# ------------------------------------------------------------------
# Top-level loader
# ------------------------------------------------------------------

def load_config(config_path: str | None = None, debug: bool = False) -> dict:
    """Load and merge configuration.

    If *config_path* is given, uses only that file (returns defaults if
    the file does not exist).  Otherwise falls back to
    ``~/.config/usbmon/config.json``.

    Returns the effective configuration dict (always has all default keys).
    """
    config = dict(DEFAULT_CONFIG)
    path = config_path if config_path is not None else os.path.expanduser(DEFAULT_CONFIG_PATH)
    if os.path.exists(path):
        _read_and_merge(path, config, debug=debug)
    return config


# ------------------------------------------------------------------
# ConfigManager
# ------------------------------------------------------------------

class ConfigManager:
    """Centralized configuration management with load/save/validate."""

    def __init__(self, config_path: str | None = None, debug: bool = False):
        self._config_path = config_path or os.path.expanduser(DEFAULT_CONFIG_PATH)
        self._debug = debug
        self._config: dict = dict(DEFAULT_CONFIG)
        self._load_config()

    def _load_config(self) -> None:
        """Reset to defaults, then overlay from file (if exists)."""
        self._config = dict(DEFAULT_CONFIG)
        if os.path.exists(self._config_path):
            _read_and_merge(self._config_path, self._config, debug=self._debug)

    def reload(self) -> bool:
        """Reload configuration from file. Returns True on success."""
        try:
            self._load_config()
            return True
        except OSError:
            return False

    def save(self, target_path: str | None = None) -> bool:
        """Atomically save configuration to file. Returns True on success."""
        save_path = target_path or self._config_path
        try:
            save_json(save_path, self.get_all())
            return True
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Could not save config to %s: %s", save_path, exc)
            return False

    def get(self, key: str, default=None):
        return self._config.get(key, default)

    def set(self, key: str, value) -> None:
        self._config[key] = value

    def update(self, updates: dict) -> None:
        self._config.update(updates)

    def get_all(self) -> dict:
        """Return all configuration (excluding internal keys)."""
        return {k: v for k, v in self._config.items() if not k.startswith('_')}

    def reset_to_defaults(self) -> None:
        self._config = dict(DEFAULT_CONFIG)

    def validate(self) -> bool:
        """Validate current configuration. Returns True if valid."""
        try:
            validate_config(self._config)
            return True
        except ValueError:
            return False

    @property
    def config_path(self) -> str:
        return self._config_path
