"""Model names and context-window sizes."""

DEFAULT_MODEL = "gemini-2.5-pro"
DEFAULT_FALLBACK_MODEL = "gemini-2.5-flash"

DEFAULT_TOKEN_LIMIT = 1_048_576

_TOKEN_LIMITS: dict[str, int] = {
    "gemini-1.5-pro": 2_097_152,
    "gemini-1.5-flash": 1_048_576,
    "gemini-2.5-pro": 1_048_576,
    "gemini-2.5-flash": 1_048_576,
    "gemini-2.5-flash-lite": 1_048_576,
    "gemini-2.0-flash": 1_048_576,
    "gemini-2.0-flash-preview-image-generation": 32_000,
}


def get_effective_model(
    in_fallback_mode: bool,
    requested_model: str,
    fallback_model: str = DEFAULT_FALLBACK_MODEL,
) -> str:
    """Resolve the model to call for the current fallback state."""
    if not in_fallback_mode:
        return requested_model
    # Lite models are already the cheapest tier; keep them.
    if "lite" in requested_model:
        return requested_model
    return fallback_model


def token_limit(model: str, override: int = 0) -> int:
    """Context window size in tokens for ``model``."""
    if override > 0:
        return override
    if model in _TOKEN_LIMITS:
        return _TOKEN_LIMITS[model]
    for prefix, limit in _TOKEN_LIMITS.items():
        if model.startswith(prefix):
            return limit
    return DEFAULT_TOKEN_LIMIT
