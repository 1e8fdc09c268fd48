"""
polychat CLI Configuration Module

Handles configuration priority:
  1. CLI flags (highest priority)
  2. Environment variables
  3. Default values (lowest priority)

Configuration sources:
  - API_BASE: POLYCHAT_API_BASE (env) → http://127.0.0.1:8000 (default)
  - TIMEOUT: POLYCHAT_CLI_TIMEOUT (env) → 30 (default, seconds)
  - RETRY_TIMES: POLYCHAT_CLI_RETRY_TIMES (env) → 3 (default)
  - PROVIDER: POLYCHAT_PROVIDER (env) → first provider with a stored key
"""

import os
from dataclasses import dataclass
from typing import Optional

from polychat.core.providers import MODELS_BY_PROVIDER

DEFAULT_API_BASE = "http://127.0.0.1:8000"


@dataclass
class CLIConfig:
    """CLI Configuration object."""

    api_base: str = DEFAULT_API_BASE
    timeout: int = 30  # seconds
    retry_times: int = 3
    provider: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary (safe for display, no secrets)."""
        return {
            "api_base": self.api_base,
            "timeout": self.timeout,
            "retry_times": self.retry_times,
            "provider": self.provider,
        }


def get_api_base_from_env() -> str:
    """
    Get API base URL from environment variables.

    Source: POLYCHAT_API_BASE
    Default: http://127.0.0.1:8000
    """
    return os.getenv("POLYCHAT_API_BASE") or DEFAULT_API_BASE


def _int_from_env(name: str, default: int) -> int:
    try:
        value = os.getenv(name)
        if value:
            return int(value)
    except (ValueError, TypeError):
        pass
    return default


def get_timeout_from_env() -> int:
    """Source: POLYCHAT_CLI_TIMEOUT (seconds). Default: 30"""
    return _int_from_env("POLYCHAT_CLI_TIMEOUT", 30)


def get_retry_times_from_env() -> int:
    """Source: POLYCHAT_CLI_RETRY_TIMES. Default: 3"""
    return _int_from_env("POLYCHAT_CLI_RETRY_TIMES", 3)


def get_provider_from_env() -> Optional[str]:
    provider = (os.getenv("POLYCHAT_PROVIDER") or "").strip().lower()
    return provider if provider in MODELS_BY_PROVIDER else None


def get_config(
    api_base: Optional[str] = None,
    timeout: Optional[int] = None,
    retry_times: Optional[int] = None,
    provider: Optional[str] = None,
) -> CLIConfig:
    """
    Build CLI configuration with priority: CLI flag > env > default.

    Returns:
        CLIConfig object with resolved values
    """
    return CLIConfig(
        api_base=api_base or get_api_base_from_env(),
        timeout=timeout or get_timeout_from_env(),
        retry_times=retry_times or get_retry_times_from_env(),
        provider=provider or get_provider_from_env(),
    )
