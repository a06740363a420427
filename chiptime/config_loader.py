# chiptime/config_loader.py
from __future__ import annotations
"""
Unified configuration loader for ChipTime.

Single source of truth:
    config/config.yaml      (or the path in $CHIPTIME_CONFIG)

Design notes
------------
- If the file is missing or broken, we raise a friendly RuntimeError that
  prints absolute paths for quick fixes.
- Unknown keys are fine; we pass the full dict through untouched.
- Helpers return sensible defaults when optional sections are absent.
- Paths are absolute (resolved against the repo root) unless already absolute.

Public API
----------
- CONFIG: dict                              # eager-loaded contents of the config file
- load_config(path: str|Path|None = None)   # explicit reload (mainly for tests/tools)
- get_data_dir() -> pathlib.Path
- get_watch_interval() -> float
- get_timestamp_format() -> str
- get_log_level(default: str = "INFO") -> str
- get_log_file() -> pathlib.Path | None
- get_server_bind() -> tuple[str, int]
- setup_logging() -> None
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

# ---------- Files & roots ----------
PROJECT_ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR   = PROJECT_ROOT / "config"
DEFAULT_CFG  = CONFIG_DIR / "config.yaml"
ENV_VAR      = "CHIPTIME_CONFIG"

DEFAULT_WATCH_INTERVAL_S = 1.0
DEFAULT_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


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
    pth = Path(p).expanduser()
    return pth if pth.is_absolute() else (PROJECT_ROOT / pth).resolve()


# ---------- Loader ----------
def load_config(path: str | os.PathLike[str] | None = None) -> Dict[str, Any]:
    """
    Load a single YAML file (default: $CHIPTIME_CONFIG or config/config.yaml),
    validate required shape, and return the raw dict (unmodified).
    """
    if path is None and os.getenv(ENV_VAR):
        path = os.environ[ENV_VAR]
    cfg_path = _resolve_path(path) if path else DEFAULT_CFG
    cfg = _load_yaml(cfg_path)

    # Minimal structural contract: where do races and caches live?
    try:
        data_dir = cfg["app"]["storage"]["data_dir"]
        if not isinstance(data_dir, (str, os.PathLike)) or not str(data_dir).strip():
            raise KeyError("app.storage.data_dir must be a non-empty string")
    except (KeyError, TypeError) as ke:
        raise RuntimeError(
            f"CONFIG missing required key: app.storage.data_dir ({cfg_path})\n"
            "Your config must contain a single top-level 'app:' mapping with a "
            "'storage.data_dir' entry. See config/config.yaml template."
        ) from ke

    return cfg


# Eagerly load once for the app
CONFIG: Dict[str, Any] = load_config()


def use_config(cfg: Dict[str, Any]) -> None:
    """Swap the module-level CONFIG so every accessor reads `cfg`."""
    global CONFIG
    CONFIG = cfg


# ---------- Accessors ----------
def _app() -> Dict[str, Any]:
    return CONFIG.get("app", {}) or {}


def get_data_dir() -> Path:
    """Return absolute directory holding races.json and per-race JSON files."""
    data_dir = (_app().get("storage", {}) or {}).get("data_dir")
    if not data_dir:
        # load_config already validated this; only reachable after use_config({...})
        raise RuntimeError("CONFIG missing app.storage.data_dir")
    return _resolve_path(data_dir)


def get_watch_interval() -> float:
    """Seconds between live-update polls of a race's punch file."""
    raw = (_app().get("watcher", {}) or {}).get("interval_s", DEFAULT_WATCH_INTERVAL_S)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return DEFAULT_WATCH_INTERVAL_S
    return value if value > 0 else DEFAULT_WATCH_INTERVAL_S


def get_timestamp_format() -> str:
    """strptime pattern for the punch log's timestamp column."""
    fmt = (_app().get("parser", {}) or {}).get("timestamp_format")
    return str(fmt) if fmt else DEFAULT_TIMESTAMP_FORMAT


def get_log_level(default: str = "INFO") -> str:
    lvl = (CONFIG.get("log", {}) or {}).get("level", default)
    # normalize common variants
    return str(lvl).upper()


def get_log_file() -> Optional[Path]:
    path = (CONFIG.get("log", {}) or {}).get("file")
    return _resolve_path(path) if path else None


def get_server_bind() -> Tuple[str, int]:
    """
    Return (host, port) for the HTTP API. Defaults to ('127.0.0.1', 8000)
    unless app.server.host / app.server.port are set.
    """
    server = _app().get("server", {}) or {}
    host = server.get("host", "127.0.0.1")
    port = server.get("port", 8000)
    try:
        return str(host), int(port)
    except (TypeError, ValueError):
        return "127.0.0.1", 8000


def setup_logging() -> None:
    """basicConfig from the log section; optional append-mode file sink."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_file = get_log_file()
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_file, mode="a", encoding="utf-8"))
        except OSError as ex:
            # The log file is a convenience; stderr keeps working without it.
            logging.getLogger("chiptime").warning("log file unavailable: %s (%s)", log_file, ex)

    logging.basicConfig(
        level=getattr(logging, get_log_level("INFO"), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )
# ---------- End of config_loader.py ----------
