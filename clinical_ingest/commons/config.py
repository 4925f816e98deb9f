import os
import sys
from typing import Any, Optional

import yaml

from clinical_ingest.commons.types import Settings

DEFAULT_CONFIG = "clinical_ingest/configs/settings.yaml"


def resource_path(relative_path: str) -> str:
    """Absolute path to a bundled resource, frozen executable or source checkout."""
    if hasattr(sys, "_MEIPASS"):
        base_path = sys._MEIPASS
    else:
        base_path = os.path.abspath(".")
    return os.path.join(base_path, relative_path)


def load_settings(path_or_obj: Any = None) -> Settings:
    """Accepts a YAML path, an already loaded dict or None (bundled defaults)."""
    if isinstance(path_or_obj, Settings):
        return path_or_obj
    if isinstance(path_or_obj, dict):
        data = path_or_obj
    else:
        path = path_or_obj or os.getenv("CLINICAL_INGEST_CONFIG") or resource_path(DEFAULT_CONFIG)
        data = _read_yaml(path)

    data = dict(data or {})
    env_level: Optional[str] = os.getenv("LOG_LEVEL")
    if env_level:
        data["log_level"] = env_level.upper()
    return Settings.model_validate(data)


def _read_yaml(path: str) -> dict:
    if not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}
