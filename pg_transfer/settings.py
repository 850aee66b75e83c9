from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

log = logging.getLogger(__name__)

# ============================== Config model ===============================

@dataclass(frozen=True)
class WorkerSettings:
    catalog_dsn: str = ""
    encryption_key: str = ""
    poll_interval_seconds: int = 30
    batch_size: int = 1000
    command_timeout_seconds: int = 6000
    max_concurrent_jobs: int = 5            # accepted, jobs still run one at a time
    disable_foreign_keys: bool = True
    alert_webhook_url: str = ""
    log_level: str = "INFO"


_ENV_KEYS = {f.name: f.name.upper() for f in fields(WorkerSettings)}


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _coerce(name: str, value: Any) -> Any:
    kind = WorkerSettings.__dataclass_fields__[name].type
    if kind in ("int", int):
        return int(value)
    if kind in ("bool", bool):
        return _to_bool(value)
    return str(value).strip()


def _load_settings_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")
    raw = path.read_text(encoding="utf-8").strip()
    if not raw:
        raise ValueError(f"Settings file {path} is empty")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in settings file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Settings file {path} must contain a JSON object")
    return data


def load_settings(path: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> WorkerSettings:
    """
    Build WorkerSettings from (lowest to highest precedence):
      defaults -> JSON settings file (WORKER_SETTINGS_PATH or `path`) -> environment.
    A .env file in the working directory is loaded into the environment first.
    """
    if env is None:
        load_dotenv()
        env = dict(os.environ)

    values: Dict[str, Any] = {}
    settings_path = path or env.get("WORKER_SETTINGS_PATH", "").strip()
    if settings_path:
        file_values = _load_settings_file(Path(settings_path))
        unknown = sorted(set(file_values) - set(_ENV_KEYS))
        if unknown:
            log.warning("Ignoring unknown settings keys in %s: %s", settings_path, unknown)
        values.update({k: v for k, v in file_values.items() if k in _ENV_KEYS})
        log.info("Loaded worker settings from %s", settings_path)

    for name, env_key in _ENV_KEYS.items():
        if env_key in env and env[env_key] != "":
            values[name] = env[env_key]

    try:
        settings = WorkerSettings(**{k: _coerce(k, v) for k, v in values.items()})
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid worker settings: {e}") from e

    if settings.poll_interval_seconds <= 0:
        raise ValueError("poll_interval_seconds must be positive")
    if settings.batch_size <= 0:
        raise ValueError("batch_size must be positive")
    return settings
