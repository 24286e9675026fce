from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from proctor.config import MonitorSettings
from proctor.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_ENV = "INTEGRITY_GUARD_CONFIG"


def resolve_config_path(default: Union[str, Path], environ: Optional[Mapping[str, str]] = None) -> Path:
    """The settings file named by INTEGRITY_GUARD_CONFIG, else `default`."""
    env = os.environ if environ is None else environ
    override = env.get(CONFIG_ENV)
    return Path(override) if override else Path(default)


def load_settings(path: Union[str, Path]) -> MonitorSettings:
    cfg_path = Path(path)
    if not cfg_path.exists():
        logger.info("no settings file at %s, using defaults", cfg_path)
        return MonitorSettings()
    try:
        with cfg_path.open("r") as fh:
            data = yaml.safe_load(fh) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"{cfg_path}: not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{cfg_path}: expected a mapping of sections, got {type(data).__name__}")
    try:
        return MonitorSettings.from_dict(data)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{cfg_path}: {exc}") from exc


def persist_settings(path: Union[str, Path], payload: Dict[str, Any]) -> None:
    cfg_path = Path(path)
    cfg_path.parent.mkdir(parents=True, exist_ok=True)
    with cfg_path.open("w") as fh:
        yaml.safe_dump(payload, fh, sort_keys=False)
