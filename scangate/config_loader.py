# scangate/config_loader.py
from __future__ import annotations
"""
Unified configuration loader for ScanGate.

Single source of truth:
    config/config.yaml   (override with SCANGATE_CONFIG=/path/to/file.yaml)

Design notes
------------
- If the file is missing or broken, we raise a friendly RuntimeError that
  prints absolute paths for quick fixes.
- Unknown keys are fine; we pass the full dict through untouched.
- Helpers return {} or sensible defaults when sections are absent.
- Paths are absolute (resolved against the repo root) unless already absolute.

Public API
----------
- CONFIG: dict                              # eager-loaded contents of the config file
- load_config(path: str|Path|None = None)   # explicit reload (mainly for tests/tools)
- get_db_path() -> pathlib.Path
- get_limits_cfg() -> dict
- get_station_cfg() -> dict
- get_publisher_cfg() -> dict
- get_log_level(default: str = "INFO") -> str
- get_server_bind() -> tuple[str, int]
"""

import os
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml

# ---------- Files & roots ----------
PROJECT_ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR   = PROJECT_ROOT / "config"
DEFAULT_CFG  = CONFIG_DIR / "config.yaml"
ENV_CFG      = "SCANGATE_CONFIG"


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


def _resolve_path(p: str | os.PathLike[str]) -> Path:
    """Return absolute path; resolve relative to repo root."""
    pth = Path(p)
    return pth if pth.is_absolute() else (PROJECT_ROOT / pth).resolve()


# ---------- Loader ----------
def load_config(path: str | os.PathLike[str] | None = None) -> Dict[str, Any]:
    """
    Load a single YAML file (default: $SCANGATE_CONFIG or config/config.yaml),
    validate the required shape, and return the raw dict (unmodified).
    """
    if path:
        cfg_path = _resolve_path(path)
    elif os.getenv(ENV_CFG):
        cfg_path = _resolve_path(os.environ[ENV_CFG])
    else:
        cfg_path = DEFAULT_CFG
    cfg = _load_yaml(cfg_path)

    # Minimal structural contract for server startup:
    try:
        sqlite_path = cfg["app"]["server"]["persistence"]["sqlite_path"]
        if not isinstance(sqlite_path, (str, os.PathLike)) or not str(sqlite_path).strip():
            raise KeyError("app.server.persistence.sqlite_path must be a non-empty string")
    except KeyError as ke:
        raise RuntimeError(
            "CONFIG missing required key: app.server.persistence.sqlite_path\n"
            "Your config must contain a single top-level 'app:' mapping with a "
            "'server.persistence.sqlite_path' entry. See config/config.yaml template."
        ) from ke

    return cfg


# Eagerly load once for the app
CONFIG: Dict[str, Any] = load_config()


# ---------- Accessors ----------
def get_db_path() -> Path:
    """Return absolute filesystem path to the authoritative SQLite database."""
    sqlite_path = (
        CONFIG.get("app", {})
              .get("server", {})
              .get("persistence", {})
              .get("sqlite_path")
    )
    if not sqlite_path:
        # Unreachable unless CONFIG was swapped for something load_config never saw.
        raise RuntimeError("CONFIG missing app.server.persistence.sqlite_path")
    return _resolve_path(sqlite_path)


def get_limits_cfg() -> Dict[str, Any]:
    """Return the limit policy block (cedula defaults etc.) or {}."""
    return CONFIG.get("limits", {}) or {}


def get_station_cfg() -> Dict[str, Any]:
    """Return the scanning-station block (device, event, local queue) or {}."""
    station = dict(CONFIG.get("station", {}) or {})
    queue_path = station.get("queue_path")
    if queue_path:
        station["queue_path"] = str(_resolve_path(queue_path))
    return station


def get_publisher_cfg() -> Dict[str, Any]:
    """Return publisher configuration block or {} (mode/http/etc.)."""
    return CONFIG.get("publisher", {}) or {}


def get_log_level(default: str = "INFO") -> str:
    """
    Return station log level as 'INFO'/'DEBUG', etc.
    Server logging is controlled separately by Uvicorn / logging config.
    """
    lvl = (CONFIG.get("log", {}) or {}).get("level", default)
    return str(lvl).upper()


def get_server_bind() -> Tuple[str, int]:
    """
    Return (host, port) for launching the intake server from code.
    Defaults to ('127.0.0.1', 8000) when app.server.host/port are absent.
    """
    server = CONFIG.get("app", {}).get("server", {}) or {}
    host = server.get("host")
    port = server.get("port")
    if isinstance(host, str) and isinstance(port, int):
        return host, port
    return "127.0.0.1", 8000
# ---------- End of config_loader.py ----------
