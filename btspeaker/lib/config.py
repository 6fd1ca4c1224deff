# BT Speaker
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Shared configuration loader for BT Speaker.

Loads a single JSON config file.  Search order:
  1. $BTSPEAKER_CONFIG                (explicit override)
  2. /etc/btspeaker/config.json       (deployed install)
  3. config.json                      (CWD, for local dev)
  4. ../../config/default.json        (repo fallback)

A couple of values can be overridden from the environment so the service
unit can point at a different Ollama host or TTS engine without editing
the JSON:
  OLLAMA_URL            -> commentary.ollama_url
  BTSPEAKER_TTS_ENGINE  -> speech.engine

Usage:
    from btspeaker.lib.config import cfg

    device_name   = cfg("device", default="BT Speaker")
    poll_interval = cfg("timing", "poll_interval", default=3)
    enabled       = cfg("sources", "enabled")
"""

import json
import logging
import os

logger = logging.getLogger(__name__)

_config: dict | None = None

_SEARCH_PATHS = [
    "/etc/btspeaker/config.json",
    "config.json",
    os.path.join(os.path.dirname(__file__), "..", "..", "config", "default.json"),
]

_ENV_OVERRIDES = {
    "OLLAMA_URL": ("commentary", "ollama_url"),
    "BTSPEAKER_TTS_ENGINE": ("speech", "engine"),
}

KNOWN_SOURCES = ("bluez", "bluetoothctl", "playerctl", "mpris", "audio")
KNOWN_ENGINES = ("piper", "espeak", "edge", "none")


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    if not config.get("device"):
        logger.warning("Config %s: missing 'device' name", path)
    sources = config.get("sources") or {}
    for name in sources.get("enabled") or []:
        if name not in KNOWN_SOURCES:
            logger.warning("Config %s: unknown source '%s' in sources.enabled", path, name)
    speech = config.get("speech") or {}
    for key in ("engine", "fallback"):
        engine = speech.get(key)
        if engine and engine not in KNOWN_ENGINES:
            logger.warning("Config %s: unknown speech.%s '%s'", path, key, engine)
    timing = config.get("timing") or {}
    for key, value in timing.items():
        if not isinstance(value, (int, float)) or value < 0:
            logger.warning("Config %s: timing.%s must be a non-negative number (got %r)",
                           path, key, value)
    queue_size = speech.get("queue_size")
    if queue_size is not None and (not isinstance(queue_size, int) or queue_size < 1):
        logger.warning("Config %s: speech.queue_size must be >= 1 (got %r)", path, queue_size)


def _apply_env(config: dict) -> None:
    for var, (section, key) in _ENV_OVERRIDES.items():
        value = os.getenv(var)
        if value:
            config.setdefault(section, {})[key] = value


def _search_paths() -> list[str]:
    override = os.getenv("BTSPEAKER_CONFIG")
    return ([override] if override else []) + _SEARCH_PATHS


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _search_paths():
        try:
            with open(path) as f:
                _config = json.load(f)
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            continue
        logger.info("Config loaded from %s", path)
        _validate(_config, path)
        _apply_env(_config)
        return _config

    logger.warning("No config.json found, using defaults")
    _config = {}
    _apply_env(_config)
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("device")                          → config["device"]
    cfg("timing", "poll_interval")         → config["timing"]["poll_interval"]
    cfg("speech", "engine", default="x")   → config["speech"]["engine"] or "x"
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        return val.get(key, default)
    return default


def reload_config():
    """Force re-read from disk (for testing or hot-reload)."""
    global _config
    _config = None
    return load_config()
