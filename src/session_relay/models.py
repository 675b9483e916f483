"""models.py — Known claude model ids and their context windows.

Update this file when new models ship. Unknown models get the default
window rather than an error; claude itself is the authority on what's valid.
"""

from __future__ import annotations


SONNET = "claude-sonnet-4-20250514"
OPUS = "claude-opus-4-1-20250805"

LEGACY_SONNET = "claude-3-5-sonnet-20241022"
LEGACY_HAIKU = "claude-3-5-haiku-20241022"
LEGACY_OPUS = "claude-3-opus-20240229"

DEFAULT_MODEL = SONNET
DEFAULT_CONTEXT_WINDOW = 200_000

AVAILABLE_MODELS = [SONNET, OPUS, LEGACY_SONNET, LEGACY_HAIKU, LEGACY_OPUS]

DISPLAY_NAMES = {
    SONNET: "Claude Sonnet 4 (Latest)",
    OPUS: "Claude Opus 4.1 (Latest)",
    LEGACY_SONNET: "Claude 3.5 Sonnet (Legacy)",
    LEGACY_HAIKU: "Claude 3.5 Haiku (Legacy)",
    LEGACY_OPUS: "Claude 3 Opus (Legacy)",
}

# Aliases and families claude accepts on the command line, too.
CONTEXT_WINDOWS = {
    "claude-4-opus": 200_000,
    "claude-4-sonnet": 200_000,
    SONNET: 200_000,
    OPUS: 200_000,
    LEGACY_SONNET: 200_000,
    "claude-3-5-sonnet": 200_000,
    "claude-3-opus": 200_000,
    "claude-3-haiku": 200_000,
    "opus": 200_000,
    "sonnet": 200_000,
    "haiku": 200_000,
}


def is_valid_model(model: str) -> bool:
    return model in AVAILABLE_MODELS


def display_name(model: str) -> str:
    return DISPLAY_NAMES.get(model, model)


def context_window(model: str | None) -> int:
    """Context window for a model: exact match, then substring either way."""
    if not model:
        return DEFAULT_CONTEXT_WINDOW
    if model in CONTEXT_WINDOWS:
        return CONTEXT_WINDOWS[model]
    lowered = model.lower()
    for key, limit in CONTEXT_WINDOWS.items():
        if key in lowered or lowered in key:
            return limit
    return DEFAULT_CONTEXT_WINDOW
