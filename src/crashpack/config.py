"""Configuration module for crashpack settings.

Values come from (highest priority first): keyword overrides, the YAML config
file, ``CRASHPACK_*`` environment variables, ``.env``, and the defaults below.
The sampling windows reproduce the timings support engineers expect from a
capture; tests shrink them to zero.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="CRASHPACK_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Hard ceiling for any single external-tool invocation
    command_timeout_s: float = 120.0
    # gcore / GC.heap_dump can take minutes on a large process
    dump_timeout_s: float = 1800.0

    # 'top' is sampled top_samples times, top_interval_s apart (1 minute)
    top_samples: int = 12
    top_interval_s: float = 5.0
    vmstat_window_s: int = 30
    strace_window_s: float = 30.0

    # Thread backtraces are taken several times to show thread movement
    backtrace_samples: int = 3
    backtrace_interval_s: float = 10.0

    attach_max_attempts: int = 3
    attach_retry_delay_s: float = 2.0

    # Treat a missing debugger as a hard failure instead of a skip
    require_debugger: bool = False

    upload_url: str = "https://www.caplin.com/account/uploads"

    log_level: str = "INFO"
    log_dir: Optional[str] = None


def get_default_config_path() -> Path:
    """Return config/crashpack.yaml at the repository root."""

    # src/crashpack/config.py -> src/crashpack -> src -> repo root
    return Path(__file__).resolve().parents[2] / "config" / "crashpack.yaml"


def _load_yaml(config_path: Path) -> Dict[str, Any]:
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Ignoring unreadable config file {config_path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring config file {config_path}: expected a mapping")
        return {}
    return data


def load_settings(config_path: Optional[Path] = None, **overrides: Any) -> Settings:
    """Build Settings from the YAML config file plus explicit overrides.

    Args:
        config_path: YAML file to read. Defaults to config/crashpack.yaml if present.
        **overrides: Field values that win over every other source.

    Returns:
        Settings instance
    """
    path = Path(config_path) if config_path else get_default_config_path()
    data: Dict[str, Any] = {}
    if path.exists():
        data.update(_load_yaml(path))
    elif config_path:
        logger.warning(f"Config file not found: {path}")
    data.update({k: v for k, v in overrides.items() if v is not None})
    return Settings(**data)
