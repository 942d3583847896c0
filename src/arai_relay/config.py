"""Configuration loading utilities for the relay server.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable ARAI_RELAY_CONFIG
3. Fallback to "config/default.yaml"

It also supports optional overrides from environment variables with prefix
``ARAI_RELAY__`` (e.g., ARAI_RELAY__DETECTOR__LEASE_SECONDS=30), and the
conventional secrets ``OPENAI_API_KEY``, ``OPENAI_MODEL`` and ``DETECTOR_KEY``.
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = " ".join(
    [
        "You are an AR voice assistant speaking to a user through a humanoid avatar in augmented reality.",
        "Goals:",
        "1) Be concise, natural, and helpful. Prefer short sentences that sound good aloud.",
        "2) When explaining steps, use simple sequencing (First, Next, Finally).",
        "3) Avoid filler and emojis. No markdown.",
        "4) If you mention actions in the real world, keep them safe and practical.",
    ]
)

DEFAULTS: Dict[str, Any] = {
    "server": {"host": "127.0.0.1", "port": 5000, "cors_origins": ["*"]},
    "detector": {
        "api_key": "mysecret",
        "lease_seconds": 60,
        "require_auth_on_latest": False,
    },
    "upstream": {
        "base_url": "https://api.openai.com/v1",
        "api_key": "",
        "model": "gpt-4o-mini",
        "timeout": 60.0,
    },
    "chat": {
        "system_prompt": DEFAULT_SYSTEM_PROMPT,
        "history_capacity": 10,
        "include_history": False,
        "use_server_history": False,
        "heartbeat_seconds": 25.0,
    },
}


# -----------------------------
# Typed view
# -----------------------------
@dataclass
class ServerSettings:
    host: str = "127.0.0.1"
    port: int = 5000
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


@dataclass
class DetectorSettings:
    api_key: str = "mysecret"
    lease_seconds: float = 60.0
    require_auth_on_latest: bool = False


@dataclass
class UpstreamSettings:
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    timeout: float = 60.0


@dataclass
class ChatSettings:
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    history_capacity: int = 10
    # Whether history turns are replayed into the upstream request.
    include_history: bool = False
    # Whether /chat falls back to the server's own recent turns when the
    # request carries no history.
    use_server_history: bool = False
    heartbeat_seconds: float = 25.0


@dataclass
class Settings:
    server: ServerSettings = field(default_factory=ServerSettings)
    detector: DetectorSettings = field(default_factory=DetectorSettings)
    upstream: UpstreamSettings = field(default_factory=UpstreamSettings)
    chat: ChatSettings = field(default_factory=ChatSettings)


# -----------------------------
# Raw loading
# -----------------------------
def _merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix ARAI_RELAY__."""
    prefix = "ARAI_RELAY__"
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        # e.g., ARAI_RELAY__UPSTREAM__MODEL -> cfg["upstream"]["model"]
        parts = key[len(prefix):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        leaf = parts[-1]
        # Attempt to parse simple types (bool, int, float)
        if value.lower() in {"true", "false"}:
            sub[leaf] = value.lower() == "true"
        else:
            try:
                if "." in value:
                    sub[leaf] = float(value)
                else:
                    sub[leaf] = int(value)
            except ValueError:
                sub[leaf] = value

    # Conventional secret names win over file values.
    if os.environ.get("OPENAI_API_KEY"):
        cfg.setdefault("upstream", {})["api_key"] = os.environ["OPENAI_API_KEY"]
    if os.environ.get("OPENAI_MODEL"):
        cfg.setdefault("upstream", {})["model"] = os.environ["OPENAI_MODEL"]
    if os.environ.get("DETECTOR_KEY"):
        cfg.setdefault("detector", {})["api_key"] = os.environ["DETECTOR_KEY"]
    return cfg


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the relay.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``ARAI_RELAY_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Defaults, merged with the file, with environment overrides applied.
    """
    if path is None:
        path = os.environ.get("ARAI_RELAY_CONFIG", "config/default.yaml")

    cfg = copy.deepcopy(DEFAULTS)
    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("config file not found at %s, using defaults", path_obj)
        return _apply_env_overrides(cfg)

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(loaded, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(cfg, loaded))


def settings_from_dict(cfg: Dict[str, Any]) -> Settings:
    """Build typed settings from a raw config dict, ignoring unknown keys."""

    def section(name: str) -> Dict[str, Any]:
        raw = cfg.get(name) or {}
        return raw if isinstance(raw, dict) else {}

    srv, det, up, chat = section("server"), section("detector"), section("upstream"), section("chat")
    origins = srv.get("cors_origins") or ["*"]
    if isinstance(origins, str):
        origins = [o.strip() for o in origins.split(",") if o.strip()]

    return Settings(
        server=ServerSettings(
            host=str(srv.get("host", "127.0.0.1")),
            port=int(srv.get("port", 5000)),
            cors_origins=list(origins),
        ),
        detector=DetectorSettings(
            api_key=str(det.get("api_key", "mysecret")),
            lease_seconds=float(det.get("lease_seconds", 60)),
            require_auth_on_latest=bool(det.get("require_auth_on_latest", False)),
        ),
        upstream=UpstreamSettings(
            base_url=str(up.get("base_url", "https://api.openai.com/v1")).rstrip("/"),
            api_key=str(up.get("api_key", "") or ""),
            model=str(up.get("model", "gpt-4o-mini")),
            timeout=float(up.get("timeout", 60.0)),
        ),
        chat=ChatSettings(
            system_prompt=str(chat.get("system_prompt") or DEFAULT_SYSTEM_PROMPT).strip(),
            history_capacity=int(chat.get("history_capacity", 10)),
            include_history=bool(chat.get("include_history", False)),
            use_server_history=bool(chat.get("use_server_history", False)),
            heartbeat_seconds=float(chat.get("heartbeat_seconds", 25.0)),
        ),
    )


def load_settings(path: Optional[str] = None) -> Settings:
    return settings_from_dict(load_config(path))
