"""
Settings for the browser agent.

The packaged default_config.yaml is the base layer; an optional user YAML is
merged over it, then BROWSER_AGENT_* variables win.  Numeric knobs are clamped.
"""

from __future__ import annotations
import copy
import logging
import os
import re
import yaml
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

DEFAULTS_PATH = Path(__file__).parent / "default_config.yaml"

_ENV_REF_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

# Environment variable → (config key, type)
ENV_MAPPINGS = {
    "BROWSER_AGENT_LLM_BASE": ("llm.base", str),
    "BROWSER_AGENT_LLM_KEY": ("llm.key", str),
    "BROWSER_AGENT_LLM_MODEL": ("llm.model", str),
    "BROWSER_AGENT_LLM_PROFILE": ("llm.default_profile", str),
    "BROWSER_AGENT_MAX_STEPS": ("agent.max_steps", int),
    "BROWSER_AGENT_LOG_LEVEL": ("logging.level", str),
    "BROWSER_AGENT_LOG_FORMAT": ("logging.format", str),
    "BROWSER_AGENT_WORKSPACE": ("bridge.workspace_dir", str),
    "BROWSER_AGENT_BRIDGE_URL": ("bridge.url", str),
    "BROWSER_AGENT_BRIDGE_TOKEN": ("bridge.token", str),
}

# key → (default, min, max)
CLAMPS = {
    "llm.timeout_ms": (120_000, 1_000, 300_000),
    "llm.retry_max_attempts": (2, 0, 6),
    "llm.max_retry_delay_ms": (60_000, 0, 300_000),
    "agent.max_steps": (100, 1, 500),
    "agent.lease_ttl_ms": (30_000, 1_000, 600_000),
    "agent.tool_auto_retry_max": (2, 0, 6),
    "agent.pause_poll_ms": (120, 10, 5_000),
    "bridge.bash_timeout_ms": (120_000, 200, 300_000),
}


class Config:
    """Nested settings dict addressed with dotted keys (``"llm.model"``)."""

    def __init__(self, data: dict):
        self._data = data

    def get(self, key: str, default: Any = None) -> Any:
        keys = key.split(".")
        value = self._data
        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
            if value is None:
                return default
        return value

    def set(self, key: str, value: Any) -> None:
        """Creates intermediate sections as needed."""
        keys = key.split(".")
        d = self._data
        for k in keys[:-1]:
            d = d.setdefault(k, {})
        d[keys[-1]] = value

    @property
    def raw(self) -> dict:
        return self._data

    def as_dict(self) -> dict:
        return copy.deepcopy(self._data)

    def __repr__(self) -> str:
        return f"<Config {', '.join(sorted(self._data))}>"


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Build the effective settings: defaults, then ``config_path``, then the
    environment variables listed in ENV_MAPPINGS.

    ``${VAR}`` inside any string value is replaced from the environment
    (empty when unset).  Numeric settings are clamped to their valid range.
    """
    data = _read_yaml(DEFAULTS_PATH)

    if config_path:
        if Path(config_path).exists():
            data = _deep_merge(data, _read_yaml(Path(config_path)))
        else:
            logger.warning(f"Config file not found, using defaults: {config_path}")

    config = Config(_expand_env(data))
    for env_key, (config_key, cast) in ENV_MAPPINGS.items():
        raw = os.environ.get(env_key, "")
        if not raw:
            continue
        try:
            config.set(config_key, cast(raw))
        except ValueError:
            logger.warning(f"Ignoring {env_key}={raw!r}: not a valid {cast.__name__}")

    _apply_clamps(config)
    return config


def _deep_merge(base: dict, overlay: dict) -> dict:
    """Nested dicts merge key by key; any other overlay value replaces the base."""
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_yaml(path: Path) -> dict:
    with open(path, encoding="utf-8") as f:
        loaded = yaml.safe_load(f)
    return loaded if isinstance(loaded, dict) else {}


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        return _ENV_REF_RE.sub(lambda m: os.getenv(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def _apply_clamps(config: Config) -> None:
    for key, (default, lo, hi) in CLAMPS.items():
        raw = config.get(key, default)
        try:
            value = int(float(raw))
        except (TypeError, ValueError):
            value = default
        config.set(key, max(lo, min(hi, value)))
