# src/common/config.py

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Self

from common.errors import ConfigError


ENV_PREFIX = "OLLAMA_PROXY_"

# Placeholder shipped in old .env templates; never accepted as a real secret.
PLACEHOLDER_TOKEN = "your-secret-token-here"


def _get_env_str(name: str, default: str) -> str:
    value = os.getenv(ENV_PREFIX + name)
    return value if value is not None else default


def _get_env_int(name: str, default: int) -> int:
    value = os.getenv(ENV_PREFIX + name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_env_bool(name: str, default: bool) -> bool:
    value = os.getenv(ENV_PREFIX + name)
    if value is None:
        return default
    value_lower = value.lower()
    if value_lower in ("1", "true", "yes", "y", "on"):
        return True
    if value_lower in ("0", "false", "no", "n", "off"):
        return False
    return default


def _get_bearer_token() -> str:
    token = os.getenv(ENV_PREFIX + "BEARER_TOKEN")
    if token is None:
        # Un-prefixed name kept for existing deployments
        token = os.getenv("BEARER_TOKEN")
    token = (token or "").strip()

    if not token:
        raise ConfigError(
            f"No bearer token configured. Set {ENV_PREFIX}BEARER_TOKEN to a secret value."
        )
    if token == PLACEHOLDER_TOKEN:
        raise ConfigError(
            f"{ENV_PREFIX}BEARER_TOKEN still holds the placeholder value; set a real secret."
        )
    return token


@dataclass(frozen=True)
class ProxyConfig:
    """
    Process-wide settings for the Ollama gateway. Built once at startup and
    passed to the app, the forwarder and the model warmer.

    Defaults can be overridden via environment variables:
    - Prefix: OLLAMA_PROXY_
    - Example: OLLAMA_PROXY_MODEL_NAME=llama3:8b
    """
    BEARER_TOKEN: str

    # --- Backend ---
    BACKEND_URL: str = "http://localhost:11434"
    MODEL_NAME: str = "mistral:7b"

    # --- Listener ---
    HOST: str = "0.0.0.0"
    PORT: int = 8080
    MAX_BODY_BYTES: int = 50 * 1024 * 1024
    SHUTDOWN_GRACE_S: int = 5

    # --- Timeouts ---
    REQUEST_TIMEOUT_MS: int = 600_000
    HEALTH_TIMEOUT_MS: int = 5_000
    WARMUP_TIMEOUT_MS: int = 120_000
    KEEPALIVE_TIMEOUT_MS: int = 30_000

    # --- Warmup / Keepalive ---
    WARMUP_ENABLED: bool = True
    WARMUP_DELAY_MS: int = 1_000
    KEEPALIVE_INTERVAL_MS: int = 600_000

    # --- Logging ---
    LOG_LEVEL: str = "INFO"

    def __post_init__(self):
        # Frozen dataclass: normalise through object.__setattr__
        object.__setattr__(self, "BACKEND_URL", self.BACKEND_URL.rstrip("/"))

    @classmethod
    def from_env(cls) -> Self:
        """
        Construct a ProxyConfig, overriding defaults with environment variables.

        Raises ConfigError when no usable bearer token is configured.
        """
        return cls(
            BEARER_TOKEN=_get_bearer_token(),

            # --- Backend ---
            BACKEND_URL=_get_env_str("BACKEND_URL", cls.BACKEND_URL),
            MODEL_NAME=_get_env_str("MODEL_NAME", cls.MODEL_NAME),

            # --- Listener ---
            HOST=_get_env_str("HOST", cls.HOST),
            PORT=_get_env_int("PORT", cls.PORT),
            MAX_BODY_BYTES=_get_env_int("MAX_BODY_BYTES", cls.MAX_BODY_BYTES),
            SHUTDOWN_GRACE_S=_get_env_int("SHUTDOWN_GRACE_S", cls.SHUTDOWN_GRACE_S),

            # --- Timeouts ---
            REQUEST_TIMEOUT_MS=_get_env_int("REQUEST_TIMEOUT_MS", cls.REQUEST_TIMEOUT_MS),
            HEALTH_TIMEOUT_MS=_get_env_int("HEALTH_TIMEOUT_MS", cls.HEALTH_TIMEOUT_MS),
            WARMUP_TIMEOUT_MS=_get_env_int("WARMUP_TIMEOUT_MS", cls.WARMUP_TIMEOUT_MS),
            KEEPALIVE_TIMEOUT_MS=_get_env_int("KEEPALIVE_TIMEOUT_MS", cls.KEEPALIVE_TIMEOUT_MS),

            # --- Warmup / Keepalive ---
            WARMUP_ENABLED=_get_env_bool("WARMUP_ENABLED", cls.WARMUP_ENABLED),
            WARMUP_DELAY_MS=_get_env_int("WARMUP_DELAY_MS", cls.WARMUP_DELAY_MS),
            KEEPALIVE_INTERVAL_MS=_get_env_int("KEEPALIVE_INTERVAL_MS", cls.KEEPALIVE_INTERVAL_MS),

            # --- Logging ---
            LOG_LEVEL=_get_env_str("LOG_LEVEL", cls.LOG_LEVEL),
        )
