import json
import logging
import os
from typing import Any, Dict, Mapping, Optional

DEFAULT_CONFIG = {
    "store_uri": "queue.db",          # SQLite path, or a mongodb:// URI
    "database_name": "test",
    "collection_name": "queue",
    "client_options": "{}",           # JSON object passed to MongoClient
    "timeout_seconds": "120",
    "sweep_interval": "30",
    "log_level": "WARNING",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

ENV_VARS = {
    "store_uri": "DOCQUEUE_STORE",
    "database_name": "DOCQUEUE_DATABASE",
    "collection_name": "DOCQUEUE_COLLECTION",
    "client_options": "DOCQUEUE_CLIENT_OPTIONS",
    "timeout_seconds": "DOCQUEUE_TIMEOUT",
    "sweep_interval": "DOCQUEUE_SWEEP_INTERVAL",
    "log_level": "DOCQUEUE_LOG_LEVEL",
}


def load_config(overrides: Optional[Mapping[str, Optional[str]]] = None,
                environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """
    Effective configuration: defaults, then environment, then explicit overrides.
    Overrides set to None are ignored. Unknown keys or bad values raise ValueError.
    """
    environ = os.environ if environ is None else environ
    cfg = dict(DEFAULT_CONFIG)
    for key, var in ENV_VARS.items():
        if environ.get(var):
            cfg[key] = environ[var]
    for key, value in (overrides or {}).items():
        if key not in ALLOWED_CONFIG_KEYS:
            raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
        if value is not None:
            cfg[key] = str(value)

    for key in ("timeout_seconds", "sweep_interval"):
        try:
            if int(cfg[key]) < 0:
                raise ValueError
        except ValueError:
            raise ValueError(f"{key} must be a non-negative integer, got {cfg[key]!r}")

    cfg["log_level"] = cfg["log_level"].upper()
    if not isinstance(logging.getLevelName(cfg["log_level"]), int):
        raise ValueError(f"log_level must be a logging level name, got {cfg['log_level']!r}")

    client_options(cfg)
    return cfg


def client_options(cfg: Mapping[str, str]) -> Dict[str, Any]:
    """MongoClient keyword arguments from the client_options JSON object."""
    try:
        opts = json.loads(cfg.get("client_options") or "{}")
    except json.JSONDecodeError as e:
        raise ValueError(f"client_options is not valid JSON: {e}")
    if not isinstance(opts, dict):
        raise ValueError("client_options must be a JSON object")
    return opts
