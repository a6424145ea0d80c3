"""Model provider registry.

Four interchangeable backends, each reachable through an OpenAI-compatible
chat-completions endpoint.  A provider is *available* when its API key is
configured; multi-provider runs only fan out to available providers.

Usage::

    from delve.tools.providers import available_providers, get_provider

    available_providers()            # → ["openai", "xai"]
    spec = get_provider("anthropic")
    spec.model(settings)             # → "claude-3-5-sonnet-20241022"
"""

from __future__ import annotations

from dataclasses import dataclass, field

from delve.config import DelveSettings, settings as default_settings
from delve.errors import ConfigurationError


@dataclass(frozen=True)
class ProviderSpec:
    """Static description of one provider."""

    name: str
    display_name: str
    base_url: str
    key_setting: str
    model_setting: str
    strengths: tuple[str, ...] = field(default_factory=tuple)

    def api_key(self, settings: DelveSettings | None = None) -> str:
        return getattr(settings or default_settings, self.key_setting)

    def model(self, settings: DelveSettings | None = None) -> str:
        return getattr(settings or default_settings, self.model_setting)

    def is_available(self, settings: DelveSettings | None = None) -> bool:
        return bool(self.api_key(settings))


PROVIDERS: dict[str, ProviderSpec] = {
    "openai": ProviderSpec(
        name="openai",
        display_name="OpenAI",
        base_url="https://api.openai.com/v1",
        key_setting="openai_api_key",
        model_setting="openai_model",
        strengths=("Reasoning", "Code Analysis", "Structured Output"),
    ),
    "anthropic": ProviderSpec(
        name="anthropic",
        display_name="Anthropic",
        base_url="https://api.anthropic.com/v1",
        key_setting="anthropic_api_key",
        model_setting="anthropic_model",
        strengths=("Long Context", "Analysis", "Creative Writing"),
    ),
    "google": ProviderSpec(
        name="google",
        display_name="Google",
        base_url="https://generativelanguage.googleapis.com/v1beta/openai",
        key_setting="google_generative_ai_api_key",
        model_setting="google_model",
        strengths=("Factual Knowledge", "Multi-modal", "Reasoning"),
    ),
    "xai": ProviderSpec(
        name="xai",
        display_name="xAI",
        base_url="https://api.x.ai/v1",
        key_setting="xai_api_key",
        model_setting="xai_model",
        strengths=("Real-time Data", "Humor", "Unconventional Thinking"),
    ),
}

# Preferred synthesis backends; each falls back to the first succeeding provider.
COMPARISON_PREFERENCE = "openai"
CONSOLIDATION_PREFERENCE = "anthropic"


def get_provider(name: str) -> ProviderSpec:
    try:
        return PROVIDERS[name]
    except KeyError:
        valid = ", ".join(PROVIDERS)
        raise ConfigurationError(f"Unknown provider {name!r} (expected one of: {valid})") from None


def available_providers(settings: DelveSettings | None = None) -> list[str]:
    """Names of providers whose API key is configured, in registry order."""
    return [name for name, spec in PROVIDERS.items() if spec.is_available(settings)]


def pick_preferred(preferred: str, candidates: list[str]) -> str:
    """``preferred`` if it is among ``candidates``, else the first candidate."""
    if not candidates:
        raise ConfigurationError("No provider available for synthesis")
    return preferred if preferred in candidates else candidates[0]
