# racecontrol/config_loader.py
from __future__ import annotations
"""
Unified configuration loader for race control.

Single source of truth:
    config/config.yaml   (or the file named by RACECONTROL_CONFIG)

Design notes
------------
- If the file is missing or broken, we raise a friendly RuntimeError that
  prints absolute paths for quick fixes.
- Unknown keys are fine; we pass the full dict through untouched.
- Helpers return {} or sensible defaults when sections are absent.
- Paths are absolute (resolved against the repo root) unless already absolute,
  except the special SQLite name ":memory:".

Public API
----------
- CONFIG: dict                              # eager-loaded contents of the config file
- load_config(path: str|Path|None = None)   # explicit reload (mainly for tests/tools)
- get_environment() -> str                  # "development" | "production"
- get_db_path() -> pathlib.Path | str
- get_race_cfg() -> dict
- get_lighting_cfg() -> dict
- get_log_level(default: str = "INFO") -> str
- get_server_bind() -> tuple[str, int]
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml

# ---------- Files & roots ----------
PROJECT_ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR   = PROJECT_ROOT / "config"
DEFAULT_CFG  = CONFIG_DIR / "config.yaml"

ENV_CONFIG_PATH = "RACECONTROL_CONFIG"
ENV_ENVIRONMENT = "RACECONTROL_ENV"


# ---------- I/O helpers ----------
def _load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML mapping from `path`. Human-friendly errors, strict root type."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise RuntimeError(
            f"Missing configuration file: {path}\n"
            f"Expected a single-file config with an 'app:' section.\n"
            f"Repo root: {PROJECT_ROOT}"
        )
    except OSError as ex:
        raise RuntimeError(f"Failed to read {path}: {type(ex).__name__}: {ex}")

    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as ex:
        raise RuntimeError(f"Failed to parse YAML {path}: {type(ex).__name__}: {ex}")

    if not isinstance(data, dict):
        raise RuntimeError(f"Root of {path} must be a mapping/object, not {type(data).__name__}")
    return data


def _resolve_path(p: Union[str, "os.PathLike[str]"]) -> Path:
    """Return absolute path; resolve relative to repo root."""
    pth = Path(p)
    return pth if pth.is_absolute() else (PROJECT_ROOT / pth).resolve()


# ---------- Loader ----------
def load_config(path: Union[str, "os.PathLike[str]", None] = None) -> Dict[str, Any]:
    """
    Load a single YAML file, validate required shape, and return the raw dict.
    Lookup order: explicit `path`, $RACECONTROL_CONFIG, config/config.yaml.
    """
    if path is None:
        path = os.getenv(ENV_CONFIG_PATH) or None
    cfg_path = _resolve_path(path) if path else DEFAULT_CFG
    cfg = _load_yaml(cfg_path)

    # Minimal structural contract for engine startup:
    try:
        sqlite_path = cfg["app"]["engine"]["persistence"]["sqlite_path"]
        if not isinstance(sqlite_path, (str, os.PathLike)) or not str(sqlite_path).strip():
            raise KeyError("app.engine.persistence.sqlite_path must be a non-empty string")
    except (KeyError, TypeError) as ke:
        raise RuntimeError(
            "CONFIG missing required key: app.engine.persistence.sqlite_path\n"
            "Your config must contain a single top-level 'app:' mapping with an "
            "'engine.persistence.sqlite_path' entry. See config/config.yaml template."
        ) from ke

    return cfg


# Eagerly load once for the app
CONFIG: Dict[str, Any] = load_config()


def _app(cfg: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return ((cfg if cfg is not None else CONFIG).get("app") or {})


# ---------- Accessors ----------
def get_environment(cfg: Optional[Dict[str, Any]] = None) -> str:
    """Environment name; $RACECONTROL_ENV wins over app.environment."""
    env = os.getenv(ENV_ENVIRONMENT, "").strip().lower()
    if env:
        return env
    return str(_app(cfg).get("environment", "production")).strip().lower()


def get_db_path(cfg: Optional[Dict[str, Any]] = None) -> Union[Path, str]:
    """Return absolute filesystem path to the SQLite database (or ':memory:')."""
    sqlite_path = (
        _app(cfg).get("engine", {})
                 .get("persistence", {})
                 .get("sqlite_path")
    )
    if not sqlite_path:
        # Unreachable for configs that went through load_config.
        raise RuntimeError("CONFIG missing app.engine.persistence.sqlite_path")
    if str(sqlite_path) == ":memory:":
        return ":memory:"
    return _resolve_path(sqlite_path)


def get_race_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return app.engine.race (max_drivers, durations, cache ttl) or {}."""
    return _app(cfg).get("engine", {}).get("race", {}) or {}


def get_lighting_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return integrations.lighting.osc_out or {}."""
    root = cfg if cfg is not None else CONFIG
    return ((root.get("integrations") or {}).get("lighting") or {}).get("osc_out") or {}


def get_log_level(default: str = "INFO", cfg: Optional[Dict[str, Any]] = None) -> str:
    root = cfg if cfg is not None else CONFIG
    lvl = (root.get("log", {}) or {}).get("level", default)
    return str(lvl).upper()


def get_server_bind(cfg: Optional[Dict[str, Any]] = None) -> Tuple[str, int]:
    """Return (host, port) from app.server, defaulting to ('127.0.0.1', 8000)."""
    server = _app(cfg).get("server", {}) or {}
    host = server.get("host")
    port = server.get("port")
    if isinstance(host, str) and isinstance(port, int):
        return host, port
    return "127.0.0.1", 8000
# ---------- End of config_loader.py ----------
