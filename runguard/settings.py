# runguard/settings.py
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from .notifications.models import NotificationConfig

# Load .env file if it exists (from project root or current directory)
load_dotenv()

logger = logging.getLogger(__name__)

ENV_PREFIX = "RUNGUARD_"


def _app_data_dir() -> Path:
    """
    Production default:
    - Respect RUNGUARD_DATA_DIR when set
    - Otherwise: ~/.runguard
    """
    base = os.getenv("RUNGUARD_DATA_DIR", "").strip()
    if base:
        return Path(base).expanduser().resolve()
    return (Path.home() / ".runguard").resolve()


def config_file() -> Path:
    return _app_data_dir() / "settings.json"


class EngineSettings(BaseModel):
    """
    Canonical engine settings.

    NOTE:
    - Stored on disk at ~/.runguard/settings.json (or RUNGUARD_DATA_DIR)
    - RUNGUARD_* environment variables override values loaded from disk
    """
    pause_poll_interval: float = Field(default=1.0, gt=0)
    dry_run_step_delay: float = Field(default=0.1, ge=0)
    retry_delay_seconds: float = Field(default=0.0, ge=0)
    approval_timeout_hours: float = Field(default=24.0, gt=0)
    default_step_duration_seconds: int = Field(default=30, ge=0)
    # finished executions whose runner and definition stay available for wait/retry
    finished_execution_retention: int = Field(default=100, ge=0)

    packs_dir: Optional[str] = Field(default=None)
    # module:attribute of the step/compensation executor used by `runguard serve`
    step_executor: Optional[str] = Field(default=None)

    log_level: str = Field(default="INFO")
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)

    @classmethod
    def default_from_env(cls) -> "EngineSettings":
        return cls.model_validate(_env_overrides({}))

    @classmethod
    def from_disk(cls) -> "EngineSettings":
        """
        Load settings from disk and apply env overrides.

        Rules:
        - Start with model defaults
        - If the file exists, it wins over defaults
        - Explicit RUNGUARD_* env vars win over everything
        """
        data: Dict[str, Any] = {}
        path = config_file()
        if path.exists():
            try:
                data = json.loads(path.read_text("utf-8"))
                cls.model_validate(data)
            except (ValueError, ValidationError) as e:
                # corrupted settings file -> fall back to defaults, keep the file for inspection
                logger.warning(f"Ignoring invalid settings file {path}: {e}")
                data = {}
        return cls.model_validate(_env_overrides(data))

    def save(self) -> None:
        path = config_file()
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(self.model_dump_json(indent=2), "utf-8")
        tmp.replace(path)


_SCALAR_FIELDS = (
    "pause_poll_interval",
    "dry_run_step_delay",
    "retry_delay_seconds",
    "approval_timeout_hours",
    "default_step_duration_seconds",
    "finished_execution_retention",
    "packs_dir",
    "step_executor",
    "log_level",
)

_NOTIFICATION_FIELDS = {
    "WEBHOOK_URL": "webhook_url",
    "WEBHOOK_ENABLED": "webhook_enabled",
    "WEBHOOK_TOKEN": "webhook_token",
}


def _env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(data)
    for name in _SCALAR_FIELDS:
        value = os.getenv(ENV_PREFIX + name.upper())
        if value is not None and value.strip() != "":
            out[name] = value.strip()

    notifications = dict(out.get("notifications") or {})
    for env_name, field in _NOTIFICATION_FIELDS.items():
        value = os.getenv(ENV_PREFIX + env_name)
        if value is not None and value.strip() != "":
            notifications[field] = value.strip()
    if notifications:
        out["notifications"] = notifications
    return out


def _deep_merge(base: Dict[str, Any], patch: Mapping[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in (patch or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


_settings: Optional[EngineSettings] = None


def get_settings() -> EngineSettings:
    global _settings
    if _settings is None:
        _settings = EngineSettings.from_disk()
    return _settings


def reload_settings() -> EngineSettings:
    global _settings
    _settings = EngineSettings.from_disk()
    return _settings


def update_settings(updates: Mapping[str, Any]) -> EngineSettings:
    """
    Deep-merge a partial payload onto the current settings, re-validate and persist.

    Example partial payloads:
      {"pause_poll_interval": 0.5}
      {"notifications": {"webhook_url": "https://hooks.example.com/runguard"}}
    """
    global _settings
    merged = _deep_merge(get_settings().model_dump(), dict(updates or {}))
    _settings = EngineSettings.model_validate(merged)
    _settings.save()
    return _settings
