"""
╔══════════════════════════════════════════╗
║     MAILBRIDGE — Utilities: Config       ║
╚══════════════════════════════════════════╝

config.yaml loader with built-in defaults and
environment overrides:

  MAILBRIDGE_CONFIG      →  path to the yaml file
  MAILBRIDGE_HOST        →  bridge.host
  MAILBRIDGE_PORT        →  bridge.port
  MAILBRIDGE_WORKER_URL  →  worker.url
  MAILBRIDGE_LOG_LEVEL   →  logging.level
"""

import copy
import os
import socket

import yaml

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

DEFAULTS = {
    "bridge": {
        "host": "127.0.0.1",
        "port": 37842,
        "path": "/ws",
        "request_timeout": 30,
        "search_timeout": 60,
    },
    "worker": {
        "url": "ws://localhost:37842/ws",
        "id": f"mailbridge-worker@{socket.gethostname()}",
        "reconnect_interval": 5,
        "heartbeat_interval": 30,
        "search_timeout": 25,
        "folders": {
            "inbox_patterns": ["inbox"],
            "spam_patterns": ["spam", "junk", "newsletter"],
            "spam_flags": ["\\Junk"],
        },
        "accounts": [],
    },
    "logging": {
        "level": "INFO",
        "file": "logs/mailbridge.log",
    },
}


class ConfigError(Exception):
    """config.yaml exists but cannot be used."""


def _merge(base, override):
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(path=None):
    """Load configuration from config.yaml merged over DEFAULTS, then apply env overrides.

    A missing file is not an error; the defaults are enough to run the bridge.
    """
    config = copy.deepcopy(DEFAULTS)
    config_path = path or os.environ.get("MAILBRIDGE_CONFIG") or os.path.join(BASE_DIR, "config.yaml")

    if os.path.exists(config_path):
        try:
            with open(config_path, "r") as f:
                loaded = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read {config_path}: {e}") from e
        if not isinstance(loaded, dict):
            raise ConfigError(f"{config_path} must contain a mapping, got {type(loaded).__name__}")
        _merge(config, loaded)

    if os.environ.get("MAILBRIDGE_HOST"):
        config["bridge"]["host"] = os.environ["MAILBRIDGE_HOST"]
    if os.environ.get("MAILBRIDGE_PORT"):
        try:
            config["bridge"]["port"] = int(os.environ["MAILBRIDGE_PORT"])
        except ValueError as e:
            raise ConfigError(f"MAILBRIDGE_PORT must be an integer: {e}") from e
    if os.environ.get("MAILBRIDGE_WORKER_URL"):
        config["worker"]["url"] = os.environ["MAILBRIDGE_WORKER_URL"]
    if os.environ.get("MAILBRIDGE_LOG_LEVEL"):
        config["logging"]["level"] = os.environ["MAILBRIDGE_LOG_LEVEL"]

    return config
