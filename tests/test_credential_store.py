import json

import pytest

from polychat.services.credential_store import (
    CredentialStore,
    InvalidApiKeyError,
    get_data_dir,
    mask_key,
)


@pytest.fixture
def store(tmp_path) -> CredentialStore:
    return CredentialStore(tmp_path / "api_keys.json")


def test_empty_store(store: CredentialStore) -> None:
    assert store.get_keys() == {"claude": None, "gemini": None, "groq": None}
    assert store.needs_any_key()
    assert store.first_available_provider() == "gemini"
    assert store.fallback_api_keys() == {}


def test_set_and_get_key(store: CredentialStore) -> None:
    store.set_key("groq", "  gsk_abc123  ")

    assert store.get_key("groq") == "gsk_abc123"
    assert store.has_key("groq")
    assert not store.needs_any_key()
    assert json.loads(store.path.read_text(encoding="utf-8"))["groq"] == "gsk_abc123"


@pytest.mark.parametrize(
    ("provider", "key"),
    [("claude", "sk-proj-abc"), ("gemini", "gsk_abc"), ("groq", "AIzaSyabc"), ("mistral", "whatever")],
)
def test_set_key_rejects_wrong_prefix(store: CredentialStore, provider: str, key: str) -> None:
    with pytest.raises(InvalidApiKeyError):
        store.set_key(provider, key)
    assert store.needs_any_key()


def test_clear_key(store: CredentialStore) -> None:
    store.set_key("claude", "sk-ant-abc")
    store.clear_key("claude")
    assert store.get_key("claude") is None


def test_reads_reflect_external_changes(store: CredentialStore) -> None:
    store.set_key("gemini", "AIzaSyabc")
    other = CredentialStore(store.path)
    other.set_key("groq", "gsk_xyz")

    assert store.get_key("groq") == "gsk_xyz"


def test_first_available_follows_chain_order(store: CredentialStore) -> None:
    store.set_key("claude", "sk-ant-abc")
    assert store.first_available_provider() == "claude"
    store.set_key("groq", "gsk_abc")
    assert store.first_available_provider() == "groq"


def test_fallback_keys_in_chain_order(store: CredentialStore) -> None:
    store.set_key("claude", "sk-ant-abc")
    store.set_key("gemini", "AIzaSyabc")
    assert list(store.fallback_api_keys()) == ["gemini", "claude"]


def test_corrupt_file_reads_as_empty(store: CredentialStore) -> None:
    store.path.write_text("{not json", encoding="utf-8")
    assert store.needs_any_key()


def test_data_dir_override(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("POLYCHAT_HOME", str(tmp_path / "home"))
    assert get_data_dir() == tmp_path / "home"
    assert (tmp_path / "home").is_dir()


@pytest.mark.parametrize(
    ("key", "masked"),
    [(None, "-"), ("", "-"), ("gsk_12", "gsk***"), ("sk-ant-api03-abcdef1234", "sk-ant-...1234")],
)
def test_mask_key(key, masked) -> None:
    assert mask_key(key) == masked
