"""Configuration loading utilities for the chat server.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable KV_CHAT_CONFIG
3. Fallback to "config/default.yaml"

It also supports optional overrides from environment variables with prefix
``KV_CHAT__`` (e.g., KV_CHAT__STORE__BACKEND=memory).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "KV_CHAT__"

DEFAULT_PERSONA = "You are a friendly, concise assistant."

DEFAULTS: Dict[str, Any] = {
    "persona": {"system_prompt": DEFAULT_PERSONA},
    "model": {"backend": "workers_ai", "api_token_env": "CLOUDFLARE_API_TOKEN",
              "account_id_env": "CLOUDFLARE_ACCOUNT_ID"},
    "store": {"backend": "disk", "data_dir": "data/transcripts"},
    "server": {"cors_origins": ["*"], "expose_stack": True},
    "logging": {"level": "INFO"},
}


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix KV_CHAT__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., KV_CHAT__MODEL__TIMEOUT -> cfg["model"]["timeout"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
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
    return cfg


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``override`` into ``base`` in place; nested dicts merge key by key."""
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def resolve_config_path(path: str | None = None) -> Path:
    """Return the config file path after applying the precedence rules."""
    if path is None:
        path = os.environ.get("KV_CHAT_CONFIG", "config/default.yaml")
    return Path(path)


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the chat server.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``KV_CHAT_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Parsed configuration laid over ``DEFAULTS``, with environment
        overrides applied.
    """
    path_obj = resolve_config_path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(cfg, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_deep_merge(copy.deepcopy(DEFAULTS), cfg))


def load_persona(cfg: Dict[str, Any], base_dir: Optional[Path] = None) -> str:
    """Return the persona instruction, read once at startup.

    ``persona.file`` wins over ``persona.system_prompt``; a relative file is
    resolved against ``base_dir`` (the config file's directory) when given.
    An unreadable file is logged and the inline prompt is used instead.
    """
    persona_cfg = cfg.get("persona", {}) or {}
    file_name = persona_cfg.get("file")
    if file_name:
        p = Path(file_name)
        if not p.is_absolute() and base_dir is not None:
            p = base_dir / p
        try:
            return p.read_text(encoding="utf-8").strip()
        except OSError as e:
            logger.error("Persona file %s unreadable, using system_prompt: %s", p, e)
    return str(persona_cfg.get("system_prompt") or DEFAULT_PERSONA).strip()


def resolve_secret(section: Dict[str, Any], key: str) -> Optional[str]:
    """Read ``key`` from a config section, or the env var named by ``<key>_env``."""
    value = section.get(key)
    if value:
        return str(value)
    env_name = section.get(f"{key}_env")
    if env_name:
        return os.environ.get(str(env_name)) or None
    return None
