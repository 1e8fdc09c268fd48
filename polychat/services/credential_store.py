import json
import os
from pathlib import Path
from typing import Optional

from polychat.core.logger import get_logger
from polychat.core.providers import API_KEY_PREFIXES, FALLBACK_CHAIN

logger = get_logger("polychat.credential_store")

KEYS_FILE_NAME = "api_keys.json"


class InvalidApiKeyError(ValueError):
    """Raised when a key does not match the provider's expected prefix."""


def get_data_dir() -> Path:
    """Local data dir shared by the key file and the history database."""
    custom = os.getenv("POLYCHAT_HOME", "").strip()
    if custom:
        data_dir = Path(custom)
    elif os.name == "nt" and os.getenv("APPDATA"):
        data_dir = Path(os.environ["APPDATA"]) / "polychat"
    else:
        data_dir = Path.home() / ".polychat"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def validate_api_key(provider: str, key: str) -> None:
    prefix = API_KEY_PREFIXES.get(provider)
    if prefix is None:
        raise InvalidApiKeyError(f"Unknown provider: {provider}")
    if not key.startswith(prefix):
        raise InvalidApiKeyError(f"{provider} API keys start with '{prefix}'")


class CredentialStore:
    """Provider -> API key mapping persisted as JSON.

    Every read goes back to the file so callers always see the current keys.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path or get_data_dir() / KEYS_FILE_NAME

    def get_keys(self) -> dict[str, Optional[str]]:
        empty: dict[str, Optional[str]] = {provider: None for provider in API_KEY_PREFIXES}
        if not self.path.exists():
            return empty
        try:
            stored = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable key file %s: %s", self.path, exc)
            return empty
        if not isinstance(stored, dict):
            return empty
        return {provider: stored.get(provider) or None for provider in empty}

    def _write(self, keys: dict[str, Optional[str]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(keys, indent=2), encoding="utf-8")
        try:
            os.chmod(self.path, 0o600)
        except OSError:
            pass

    def set_key(self, provider: str, key: str) -> None:
        key = key.strip()
        validate_api_key(provider, key)
        keys = self.get_keys()
        keys[provider] = key
        self._write(keys)

    def clear_key(self, provider: str) -> None:
        keys = self.get_keys()
        keys[provider] = None
        self._write(keys)

    def get_key(self, provider: str) -> Optional[str]:
        return self.get_keys().get(provider)

    def has_key(self, provider: str) -> bool:
        return bool(self.get_key(provider))

    def needs_any_key(self) -> bool:
        return not any(self.get_keys().values())

    def first_available_provider(self) -> str:
        """First provider in fallback-chain order that has a key; the chain head otherwise."""
        keys = self.get_keys()
        for provider in FALLBACK_CHAIN:
            if keys.get(provider):
                return provider
        return FALLBACK_CHAIN[0]

    def fallback_api_keys(self) -> dict[str, str]:
        """Non-empty keys in fallback-chain order."""
        keys = self.get_keys()
        return {provider: keys[provider] for provider in FALLBACK_CHAIN if keys.get(provider)}


def mask_key(key: Optional[str]) -> str:
    if not key:
        return "-"
    if len(key) <= 10:
        return key[:3] + "***"
    return f"{key[:7]}...{key[-4:]}"
