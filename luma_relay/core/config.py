"""Centralized configuration for the relay.

Configuration is resolved from two sources:

1. **YAML config**: loaded via Hydra from ``luma_relay/core/configs/``
2. **Environment variables**: used only for secrets and the port override

The YAML profile is selected by ``LUMA_RELAY_CONFIG_NAME`` (default:
``"local"``). Use Hydra overrides (``key=value``) to customize non-secret
values.

Usage::

    from luma_relay.core.config import get_relay_config, load_relay_config

    cfg = get_relay_config()                                  # cached, env-selected
    cfg = load_relay_config("production", ["idle_timeout_s=15"])
"""

from __future__ import annotations

import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

logger = logging.getLogger(__name__)

_CONFIG_DIR = str(Path(__file__).parent / "configs")

DEFAULT_CONFIG_NAME = "local"
API_KEY_ENV = "OPENROUTER_API_KEY"
PORT_ENV = "PORT"
CONFIG_NAME_ENV = "LUMA_RELAY_CONFIG_NAME"

# ---------------------------------------------------------------------------
# YAML loading via Hydra Compose API
# ---------------------------------------------------------------------------

def _load_yaml_config(
    config_name: str, overrides: Sequence[str] = (),
) -> dict[str, object]:
    """Load a YAML config via Hydra Compose API.

    Returns an empty dict if Hydra is unavailable or the config file is missing.
    """
    try:
        from hydra import compose, initialize_config_dir
        from omegaconf import OmegaConf

        abs_dir = os.path.abspath(_CONFIG_DIR)
        with initialize_config_dir(version_base=None, config_dir=abs_dir):
            cfg = compose(config_name=config_name, overrides=list(overrides))
        container = OmegaConf.to_container(cfg, resolve=True)
        if isinstance(container, dict):
            return container  # type: ignore[return-value]
        return {}
    except Exception:
        logger.debug("Failed to load YAML config %r, falling back to defaults", config_name)
        return {}


# ---------------------------------------------------------------------------
# YAML value helpers
# ---------------------------------------------------------------------------

def _yaml_str(yaml: dict[str, object], key: str, default: str = "") -> str:
    val = yaml.get(key)
    return str(val) if val is not None else default


def _yaml_int(yaml: dict[str, object], key: str, default: int = 0) -> int:
    val = yaml.get(key)
    return int(str(val)) if val is not None else default


def _yaml_float(yaml: dict[str, object], key: str, default: float = 0.0) -> float:
    val = yaml.get(key)
    return float(str(val)) if val is not None else default


def _yaml_bool(yaml: dict[str, object], key: str, default: bool = False) -> bool:
    val = yaml.get(key)
    if val is None:
        return default
    if isinstance(val, bool):
        return val
    return str(val).strip().lower() in {"1", "true", "yes", "on"}


def _secret(name: str, default: str = "") -> str:
    """Read a secret from an environment variable."""
    raw = os.environ.get(name)
    return raw.strip() if raw is not None else default


def _env_port(default: int) -> int:
    raw = os.environ.get(PORT_ENV, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Invalid {PORT_ENV} value: {raw!r}") from None


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RelayConfig:
    """Runtime configuration for the streaming relay."""

    openrouter_api_key: str = ""
    upstream_url: str = "https://openrouter.ai/api/v1/chat/completions"
    model: str = "openai/gpt-4o-mini"
    max_tokens_cap: int = 300
    default_max_tokens: int = 800
    default_temperature: float = 0.3
    top_p: float = 0.9
    frequency_penalty: float = 0.3
    referer: str = "https://construction-manager.app"
    title: str = "Construction Manager"
    connect_timeout_s: float = 10.0
    idle_timeout_s: float = 60.0
    disconnect_poll_interval_s: float = 0.25
    emit_fault_trailer: bool = False
    max_body_bytes: int = 10 * 1024 * 1024
    host: str = "0.0.0.0"
    port: int = 3000

    @property
    def has_credentials(self) -> bool:
        return bool(self.openrouter_api_key)


# ---------------------------------------------------------------------------
# Factory functions
# ---------------------------------------------------------------------------

def load_relay_config(
    config_name: str = DEFAULT_CONFIG_NAME, overrides: Sequence[str] = (),
) -> RelayConfig:
    """Build a :class:`RelayConfig` from a YAML profile plus environment secrets.

    Missing YAML keys fall back to the dataclass defaults. ``overrides`` are
    Hydra ``key=value`` strings applied on top of the profile.
    """
    yaml = _load_yaml_config(config_name, overrides)
    d = RelayConfig()
    return RelayConfig(
        openrouter_api_key=_secret(API_KEY_ENV),
        upstream_url=_yaml_str(yaml, "upstream_url", d.upstream_url),
        model=_yaml_str(yaml, "model", d.model),
        max_tokens_cap=_yaml_int(yaml, "max_tokens_cap", d.max_tokens_cap),
        default_max_tokens=_yaml_int(yaml, "default_max_tokens", d.default_max_tokens),
        default_temperature=_yaml_float(yaml, "default_temperature", d.default_temperature),
        top_p=_yaml_float(yaml, "top_p", d.top_p),
        frequency_penalty=_yaml_float(yaml, "frequency_penalty", d.frequency_penalty),
        referer=_yaml_str(yaml, "referer", d.referer),
        title=_yaml_str(yaml, "title", d.title),
        connect_timeout_s=_yaml_float(yaml, "connect_timeout_s", d.connect_timeout_s),
        idle_timeout_s=_yaml_float(yaml, "idle_timeout_s", d.idle_timeout_s),
        disconnect_poll_interval_s=_yaml_float(
            yaml, "disconnect_poll_interval_s", d.disconnect_poll_interval_s,
        ),
        emit_fault_trailer=_yaml_bool(yaml, "emit_fault_trailer", d.emit_fault_trailer),
        max_body_bytes=_yaml_int(yaml, "max_body_bytes", d.max_body_bytes),
        host=_yaml_str(yaml, "host", d.host),
        port=_env_port(_yaml_int(yaml, "port", d.port)),
    )


@lru_cache(maxsize=1)
def get_relay_config() -> RelayConfig:
    """Return the relay config for the profile named by ``LUMA_RELAY_CONFIG_NAME``.

    The result is cached; call ``get_relay_config.cache_clear()`` to re-read
    (useful in tests).
    """
    config_name = os.environ.get(CONFIG_NAME_ENV, DEFAULT_CONFIG_NAME).strip().lower()
    return load_relay_config(config_name)
