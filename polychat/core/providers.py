"""Provider catalog: models, fallback chain and credential formats."""

MODELS_BY_PROVIDER: dict[str, tuple[str, ...]] = {
    "claude": (
        "claude-sonnet-4-20250514",
        "claude-opus-4-20250514",
        "claude-3-5-haiku-20241022",
    ),
    "gemini": (
        "gemini-2.5-flash",
        "gemini-2.0-flash",
    ),
    "groq": (
        "llama-3.3-70b-versatile",
        "llama-3.1-8b-instant",
    ),
}

MODEL_LABELS = {
    "claude-sonnet-4-20250514": "Claude Sonnet 4",
    "claude-opus-4-20250514": "Claude Opus 4",
    "claude-3-5-haiku-20241022": "Claude 3.5 Haiku",
    "gemini-2.5-flash": "Gemini 2.5 Flash",
    "gemini-2.0-flash": "Gemini 2.0 Flash",
    "llama-3.3-70b-versatile": "Llama 3.3 70B",
    "llama-3.1-8b-instant": "Llama 3.1 8B",
}

# Priority order tried on rate limiting.
FALLBACK_CHAIN: tuple[str, ...] = ("gemini", "groq", "claude")

WEB_SEARCH_PROVIDERS = frozenset({"claude", "gemini"})

API_KEY_PREFIXES = {
    "claude": "sk-ant-",
    "gemini": "AIzaSy",
    "groq": "gsk_",
}

RATE_LIMIT_ERROR_TYPES = frozenset({"rate_limit_error", "gemini_error_429"})


def default_model(provider: str) -> str:
    return MODELS_BY_PROVIDER[provider][0]


def supports_web_search(provider: str) -> bool:
    return provider in WEB_SEARCH_PROVIDERS


def provider_for_model(model: str) -> str | None:
    for provider, models in MODELS_BY_PROVIDER.items():
        if model in models:
            return provider
    return None
