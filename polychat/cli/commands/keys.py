"""Keys command - manage stored provider API keys."""

import typer

from polychat.cli.lib.safe_output import emoji, safe_print
from polychat.core.providers import FALLBACK_CHAIN, MODELS_BY_PROVIDER
from polychat.services.credential_store import CredentialStore, InvalidApiKeyError, mask_key

keys_app = typer.Typer(help="Manage provider API keys", no_args_is_help=True)


def _check_provider(provider: str) -> str:
    provider = provider.lower()
    if provider not in MODELS_BY_PROVIDER:
        safe_print(f"Unknown provider: {provider} (expected one of {', '.join(MODELS_BY_PROVIDER)})", err=True)
        raise typer.Exit(1)
    return provider


@keys_app.command("set")
def set_key(
    provider: str = typer.Argument(..., help="claude, gemini or groq"),
    key: str = typer.Argument(..., help="API key"),
) -> None:
    """Store an API key for a provider."""
    provider = _check_provider(provider)
    try:
        CredentialStore().set_key(provider, key)
    except InvalidApiKeyError as exc:
        safe_print(f"{emoji('❌', '[ERROR]')} {exc}", err=True)
        raise typer.Exit(1)
    safe_print(f"{emoji('✅', '[OK]')} Saved {provider} key {mask_key(key)}")


@keys_app.command("clear")
def clear_key(provider: str = typer.Argument(..., help="claude, gemini or groq")) -> None:
    """Remove the stored key of a provider."""
    provider = _check_provider(provider)
    CredentialStore().clear_key(provider)
    safe_print(f"{emoji('🗑', '[OK]')} Cleared {provider} key")


@keys_app.command("list")
def list_keys() -> None:
    """Show stored keys (masked) in fallback order."""
    store = CredentialStore()
    keys = store.get_keys()
    for position, provider in enumerate(FALLBACK_CHAIN, start=1):
        safe_print(f"  {position}. {provider:<7} {mask_key(keys.get(provider))}")
    safe_print(f"\nDefault provider: {store.first_available_provider()}")
