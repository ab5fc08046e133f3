"""Runtime configuration: YAML defaults file and CLI overrides.

Precedence, lowest to highest: built-in ``Constants``, the YAML file, CLI
flags. Neither step raises; a bad file or flag leaves the defaults in place.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import yaml

from constants import CacheTTL, Constants

logger = logging.getLogger(__name__)

# YAML section -> {key: (target class, attribute, coercion)}
_CONFIG_MAP = {
    "cache": {
        "versions_ttl": (CacheTTL, "VERSIONS", int),
        "verified_ttl": (CacheTTL, "VERIFIED_STATUS", int),
        "search_ttl": (CacheTTL, "SEARCH_RESULTS", int),
        "autocomplete_ttl": (CacheTTL, "AUTOCOMPLETE", int),
        "max_entries": (Constants, "WORKSPACE_CACHE_MAX_ENTRIES", int),
        "file": (Constants, "WORKSPACE_CACHE_FILE", str),
        "source_cooldown": (Constants, "SOURCE_COOLDOWN_SEC", int),
    },
    "http": {
        "timeout": (Constants, "REQUEST_TIMEOUT", float),
        "discovery_timeout": (Constants, "DISCOVERY_TIMEOUT", float),
        "max_redirects": (Constants, "HTTP_MAX_REDIRECTS", int),
        "pool_limit": (Constants, "HTTP_POOL_LIMIT", int),
        "http2_origins": (Constants, "HTTP2_ORIGINS", list),
        "http2_max_sessions": (Constants, "HTTP2_MAX_SESSIONS", int),
        "user_agent": (Constants, "USER_AGENT", str),
    },
    "concurrency": {
        "icons": (Constants, "ICON_CONCURRENCY", int),
        "metadata": (Constants, "METADATA_CONCURRENCY", int),
    },
    "dotnet": {
        "command_timeout": (Constants, "COMMAND_TIMEOUT", int),
        "restore_timeout": (Constants, "RESTORE_TIMEOUT", int),
    },
}


def resolve_config_path(explicit: Optional[str] = None) -> Optional[str]:
    """Pick the YAML file: ``--config``, then ``NUIGET_CONFIG``, then the defaults."""
    if explicit and explicit.strip():
        return os.path.expanduser(explicit.strip())
    env_path = os.environ.get(Constants.ENV_CONFIG)
    if env_path and env_path.strip():
        return os.path.expanduser(env_path.strip())
    for candidate in Constants.DEFAULT_CONFIG_PATHS:
        path = os.path.expanduser(candidate)
        if os.path.isfile(path):
            return path
    return None


def load_yaml_config(path: Optional[str]) -> Dict[str, Any]:
    """Load a YAML mapping from ``path``.

    Args:
        path: YAML file path; None or a missing file yields ``{}``.

    Returns:
        The parsed mapping, or an empty dict when unreadable.
    """
    if not path:
        return {}
    if not os.path.isfile(path):
        logger.warning("Config file not found: %s", path)
        return {}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as exc:
        logger.error("Failed to load config %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def apply_config(cfg: Dict[str, Any]) -> int:
    """Copy known YAML settings onto the constants; returns how many were applied."""
    applied = 0
    for section, keys in _CONFIG_MAP.items():
        values = cfg.get(section) if isinstance(cfg, dict) else None
        if not isinstance(values, dict):
            continue
        for key, (target, attr, coerce) in keys.items():
            if key not in values or values[key] is None:
                continue
            try:
                setattr(target, attr, coerce(values[key]))
                applied += 1
            except Exception:  # pylint: disable=broad-exception-caught
                # Bad overrides leave the defaults in place
                logger.warning("Ignoring invalid config value %s.%s", section, key)
    return applied


def apply_cli_overrides(args) -> None:
    """Apply CLI flags with the highest precedence."""
    try:
        if getattr(args, "TIMEOUT", None) is not None:
            Constants.REQUEST_TIMEOUT = float(args.TIMEOUT)
        if getattr(args, "NO_HTTP2", False):
            Constants.HTTP2_ORIGINS = []
        if getattr(args, "CONCURRENCY", None) is not None:
            Constants.METADATA_CONCURRENCY = int(args.CONCURRENCY)
            Constants.ICON_CONCURRENCY = int(args.CONCURRENCY)
    except (TypeError, ValueError) as exc:
        logger.warning("Ignoring invalid command-line override: %s", exc)


def configure_from(args) -> Optional[str]:
    """Load the YAML file for ``args`` and then apply the CLI flags.

    Returns:
        The YAML path that was read, if any.
    """
    path = resolve_config_path(getattr(args, "CONFIG", None))
    cfg = load_yaml_config(path)
    if cfg:
        count = apply_config(cfg)
        logger.debug("Applied %d settings from %s", count, path)
    apply_cli_overrides(args)
    return path
