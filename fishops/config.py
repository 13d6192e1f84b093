from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

import streamlit as st

from fishops.errors import ValidationError

CONFIG_FILE_NAME = "settings.json"
DB_FILE_NAME = "fishops.db"

ENV_DATA_DIR = "FISH_OPS_DATA_DIR"
ENV_DB_TIMEOUT = "FISH_OPS_DB_TIMEOUT"
ENV_RECONCILE_TOLERANCE = "FISH_OPS_RECONCILE_TOLERANCE"
ENV_LOG_LEVEL = "FISH_OPS_LOG_LEVEL"


@dataclass(frozen=True)
class Settings:
    data_dir: Path
    db_path: Path
    db_timeout_s: float = 5.0
    reconcile_tolerance: float = 0.0
    log_level: str = "INFO"


def _default_data_dir() -> Path:
    return Path.home() / ".fish_ops"


def _load_persisted_settings(data_dir: Path) -> dict:
    cfg = data_dir / CONFIG_FILE_NAME
    if cfg.exists():
        try:
            return json.loads(cfg.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}
    return {}


def _float_setting(env: Mapping[str, str], persisted: dict, name: str, key: str, default: float) -> float:
    raw = env.get(name, persisted.get(key, default))
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number, got {raw!r}.", entity="settings", operation="load")
    if value < 0:
        raise ValidationError(f"{name} must be >= 0.", entity="settings", operation="load")
    return value


def load_settings(env: Optional[Mapping[str, str]] = None, data_dir: Optional[str] = None) -> Settings:
    """
    Resolve settings without touching Streamlit state.

    Priority for the data directory:
      1) explicit data_dir argument
      2) FISH_OPS_DATA_DIR
      3) data_dir persisted in the default folder's settings.json
      4) default folder
    """
    env = os.environ if env is None else env

    default_dir = _default_data_dir()
    persisted = _load_persisted_settings(default_dir)

    if data_dir:
        resolved = Path(data_dir).expanduser().resolve()
    elif env.get(ENV_DATA_DIR):
        resolved = Path(env[ENV_DATA_DIR]).expanduser().resolve()
    else:
        resolved = Path(persisted.get("data_dir", default_dir)).expanduser().resolve()

    if resolved != default_dir:
        # Numeric settings may also live next to a relocated database.
        persisted = {**persisted, **_load_persisted_settings(resolved)}

    resolved.mkdir(parents=True, exist_ok=True)
    return Settings(
        data_dir=resolved,
        db_path=resolved / DB_FILE_NAME,
        db_timeout_s=_float_setting(env, persisted, ENV_DB_TIMEOUT, "db_timeout_s", 5.0),
        reconcile_tolerance=_float_setting(env, persisted, ENV_RECONCILE_TOLERANCE, "reconcile_tolerance", 0.0),
        log_level=str(env.get(ENV_LOG_LEVEL, persisted.get("log_level", "INFO"))).strip().upper() or "INFO",
    )


def persist_data_dir(data_dir_str: str) -> None:
    data_dir = Path(data_dir_str).expanduser().resolve()
    data_dir.mkdir(parents=True, exist_ok=True)

    default_dir = _default_data_dir()
    default_dir.mkdir(parents=True, exist_ok=True)
    cfg = default_dir / CONFIG_FILE_NAME
    payload = {**_load_persisted_settings(default_dir), "data_dir": str(data_dir)}
    cfg.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    # Update session for immediate effect
    st.session_state["fish_ops_data_dir"] = str(data_dir)


@st.cache_resource
def get_settings() -> Settings:
    # Session state (set via Data Management page) wins over everything else.
    return load_settings(data_dir=st.session_state.get("fish_ops_data_dir"))
