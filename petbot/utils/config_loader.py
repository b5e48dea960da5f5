from __future__ import annotations

import logging
import os
import threading
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_cache_lock = threading.Lock()
_cached: dict[str, Any] | None = None
_cached_path: str | None = None

_TIMING_KEYS = (
    "friend_request_delay",
    "trade_friend_accept_delay",
    "join_delay",
    "trade_delay",
    "friendship_poll_interval",
    "friend_timeout",
    "pet_receive_delay",
    "custody_verify_delay",
)


def _project_root() -> Path:
    # petbot/utils/config_loader.py -> petbot/utils -> petbot -> project root
    return Path(__file__).resolve().parents[2]


def default_config_path() -> Path:
    env_path = (os.environ.get("PETBOT_CONFIG_PATH") or "").strip()
    if env_path:
        return Path(env_path)
    return _project_root() / "config" / "config.yaml"


def _apply_env_overrides(cfg: dict[str, Any]) -> None:
    """
    Override selected YAML settings with environment variables.

    This keeps runtime configuration flexible without duplicating config parsing logic.
    """
    platform = cfg.setdefault("platform", {})
    if os.getenv("PETBOT_PLATFORM_MODE"):
        platform["mode"] = os.environ["PETBOT_PLATFORM_MODE"].strip().lower()

    store = cfg.setdefault("store", {})
    if os.getenv("PETBOT_STORE_BACKEND"):
        store["backend"] = os.environ["PETBOT_STORE_BACKEND"].strip().lower()

    timings = cfg.setdefault("timings", {})
    if os.getenv("PETBOT_TIMING_SCALE"):
        timings["scale"] = float(os.environ["PETBOT_TIMING_SCALE"])

    server = cfg.setdefault("server", {})
    if os.getenv("PETBOT_SERVER_PORT"):
        server["port"] = int(os.environ["PETBOT_SERVER_PORT"])


def validate_config(cfg: dict[str, Any]) -> None:
    """
    Fail fast if the configuration is missing required sections.
    Keep this minimal and pragmatic; avoid over-engineering.
    """
    required_top = ["games", "timings", "platform"]
    missing = [k for k in required_top if k not in cfg]
    if missing:
        raise ValueError(f"Missing required config sections: {', '.join(missing)}")

    games = cfg.get("games") or {}
    if not isinstance(games, dict) or not games:
        raise ValueError("games must be a non-empty mapping of game id -> game config")
    seen_ids: set[str] = set()
    for game_id, game in games.items():
        bots = (game or {}).get("bots")
        if not isinstance(bots, list):
            raise ValueError(f"games.{game_id}.bots must be a list")
        for b in bots:
            for k in ["id", "user_id", "username", "max_trades"]:
                if k not in (b or {}):
                    raise ValueError(f"Missing games.{game_id}.bots[].{k} in config")
            if b["id"] in seen_ids:
                raise ValueError(f"Duplicate bot id: {b['id']}")
            seen_ids.add(b["id"])
            if int(b["max_trades"]) <= 0:
                raise ValueError(f"Bot {b['id']}: max_trades must be > 0")

    timings = cfg.get("timings") or {}
    for k in _TIMING_KEYS:
        if k not in timings:
            raise ValueError(f"Missing timings.{k} in config")
        if float(timings[k]) < 0:
            raise ValueError(f"timings.{k} must be >= 0")
    if float(timings.get("scale", 1.0)) <= 0:
        raise ValueError("timings.scale must be > 0")

    mode = str((cfg.get("platform") or {}).get("mode", "simulated"))
    if mode not in {"simulated", "roblox"}:
        raise ValueError(f"Unsupported platform.mode: {mode}")

    backend = str((cfg.get("store") or {}).get("backend", "memory"))
    if backend not in {"memory", "sqlite"}:
        raise ValueError(f"Unsupported store.backend: {backend}")


def load_config(config_path: str | Path | None = None, *, force_reload: bool = False) -> dict[str, Any]:
    """
    Load the YAML config once and reuse it across the process.

    - Reads `config/config.yaml` by default (or `PETBOT_CONFIG_PATH`).
    - Applies environment overrides for a small set of operational settings.
    - Returns a deep copy so callers can safely mutate local copies.
    """
    global _cached, _cached_path

    path = Path(config_path) if config_path else default_config_path()
    path_str = str(path.resolve())

    with _cache_lock:
        if not force_reload and _cached is not None and _cached_path == path_str:
            return deepcopy(_cached)

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open("r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}

        if not isinstance(cfg, dict):
            raise ValueError(f"Config must be a YAML mapping (dict); got {type(cfg).__name__}")

        _apply_env_overrides(cfg)
        validate_config(cfg)

        _cached = cfg
        _cached_path = path_str
        logger.info("Loaded config from %s", path_str)
        return deepcopy(cfg)


@dataclass(frozen=True)
class OrchestratorSettings:
    friend_request_delay: float
    trade_friend_accept_delay: float
    join_delay: float
    trade_delay: float
    friendship_poll_interval: float
    friend_timeout: float
    pet_receive_delay: float
    custody_verify_delay: float
    default_game_id: str


def load_orchestrator_settings(config: dict[str, Any]) -> OrchestratorSettings:
    t = (config.get("timings") or {}) if isinstance(config, dict) else {}
    scale = float(t.get("scale", 1.0))
    values = {k: float(t[k]) * scale for k in _TIMING_KEYS}
    return OrchestratorSettings(
        **values,
        default_game_id=str(config.get("default_game_id", "8737899170")),
    )
