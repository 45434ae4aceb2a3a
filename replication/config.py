"""
Replication Configuration
=========================

Loads ``configs/task_settings.json`` and overlays connection credentials from
the environment (a ``.env`` file in the working directory is honoured).

Every credential is required: a missing one raises ConfigError before any
connection is attempted.
"""

import copy
import json
import os
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigError

MIGRATION_POLICIES = ("skip_field", "defer_event")

SOURCE_ENV = {
    "user": "MONGODB_USER",
    "password": "MONGODB_PASSWORD",
    "host": "MONGODB_HOST",
    "port": "MONGODB_PORT",
    "admin_db": "MONGODB_ADMIN_DB",
}

TARGET_ENV = {
    "host": "CLICKHOUSE_HOST",
    "port": "CLICKHOUSE_PORT",
    "user": "CLICKHOUSE_USER",
    "password": "CLICKHOUSE_PASSWORD",
    "database": "CLICKHOUSE_DB",
}

MINIO_ENV = {
    "endpoint": "MINIO_ENDPOINT",
    "access_key": "MINIO_ACCESS_KEY",
    "secret_key": "MINIO_SECRET_KEY",
}

DEFAULT_SETTINGS = {
    "source": {"connection": {}},
    "target": {"connection": {"table": "mongodb_changes"}},
    "task_settings": {
        "queue_size": 1000,
        "max_insert_retries": 3,
        "retry_backoff_seconds": 1.0,
        "max_retry_backoff_seconds": 30.0,
        "migration_retries": 2,
        "max_reconnect_attempts": 5,
        "max_encoding_depth": 100,
        "failure_alert_threshold": 5,
        "checkpoint_interval": 1,
        "on_migration_failure": "skip_field",
        "checkpoint": {"backend": "file", "path": "checkpoints/cdc_checkpoint.json"},
        "logging": {"level": "INFO", "json_format": False, "log_to_file": False},
        "metrics": {"backend": "prometheus"},
        "alerts": {"dedup_window_minutes": 60, "source": "mongo_clickhouse_cdc"},
    },
}


def get_default_config_path() -> str:
    return str(Path(__file__).parent / "configs")


def _merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _overlay_env(
    section: Dict,
    mapping: Dict[str, str],
    env: Mapping[str, str],
    missing: List[str]
):
    for key, var in mapping.items():
        value = env.get(var)
        if value is None or value == "":
            missing.append(var)
        else:
            section[key] = value


def _as_port(section: Dict, name: str) -> None:
    try:
        section["port"] = int(section["port"])
    except ValueError:
        raise ConfigError(f"{name} port must be an integer, got {section['port']!r}")


def _validate(task: Dict):
    policy = task["on_migration_failure"]
    if policy not in MIGRATION_POLICIES:
        raise ConfigError(
            f"on_migration_failure must be one of {MIGRATION_POLICIES}, got {policy!r}"
        )

    for key in ("queue_size", "max_encoding_depth", "failure_alert_threshold", "checkpoint_interval"):
        if not isinstance(task[key], int) or task[key] < 1:
            raise ConfigError(f"task_settings.{key} must be a positive integer")

    for key in ("max_insert_retries", "migration_retries", "max_reconnect_attempts"):
        if not isinstance(task[key], int) or task[key] < 0:
            raise ConfigError(f"task_settings.{key} must be a non-negative integer")

    for key in ("retry_backoff_seconds", "max_retry_backoff_seconds"):
        if not isinstance(task[key], (int, float)) or task[key] < 0:
            raise ConfigError(f"task_settings.{key} must be a non-negative number")


def load_task_settings(
    config_path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None
) -> Dict:
    """
    Load and validate the replication settings.

    Args:
        config_path: Directory holding task_settings.json (defaults to the bundled configs)
        env: Environment to read credentials from (defaults to os.environ after loading .env)

    Returns:
        Settings dict with ``source``, ``target`` and ``task_settings`` sections

    Raises:
        ConfigError: if the file is unreadable, a credential is missing or a value is invalid
    """
    config_path = config_path or get_default_config_path()
    settings_path = os.path.join(config_path, "task_settings.json")
    try:
        with open(settings_path, 'r') as f:
            file_settings = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Cannot load {settings_path}: {e}")

    if env is None:
        load_dotenv()
        env = os.environ

    settings = _merge(DEFAULT_SETTINGS, file_settings)
    task = settings["task_settings"]
    missing: List[str] = []

    _overlay_env(settings["source"]["connection"], SOURCE_ENV, env, missing)
    _overlay_env(settings["target"]["connection"], TARGET_ENV, env, missing)

    checkpoint = task["checkpoint"]
    if env.get("CDC_CHECKPOINT_PATH"):
        checkpoint["path"] = env["CDC_CHECKPOINT_PATH"]
    if checkpoint.get("backend") == "minio":
        minio_config = checkpoint.setdefault("minio", {})
        _overlay_env(minio_config, MINIO_ENV, env, missing)

    if missing:
        raise ConfigError(f"Environment variables not set: {', '.join(missing)}")

    _as_port(settings["source"]["connection"], "MongoDB")
    _as_port(settings["target"]["connection"], "ClickHouse")

    alerts = task["alerts"]
    if env.get("SLACK_WEBHOOK_URL"):
        alerts["slack_webhook_url"] = env["SLACK_WEBHOOK_URL"]
    if env.get("ALERTS_POSTGRES_DSN"):
        alerts["postgres_dsn"] = env["ALERTS_POSTGRES_DSN"]

    _validate(task)
    return settings
