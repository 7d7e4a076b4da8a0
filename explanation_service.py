"""Explanation Service: subscription-aware provider selection.

Decides which AI providers a subscription tier may use, resolves the user's
preferred provider and API key, and caches generated explanations.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field

from ai_providers import AIProviderError, check_provider_availability, get_ai_provider
from cache_backend import get_cache
from helpers import config_value
from settings_store import BYOK_PROVIDERS

logger = logging.getLogger(__name__)

_PROVIDER_TIERS: dict[str, tuple[str, ...]] = {
    "ollama": ("local", "byok", "ditectrev"),
    **{p: ("byok", "ditectrev") for p in BYOK_PROVIDERS},
    "ditectrev": ("ditectrev",),
}


@dataclass
class ExplanationRequest:
    question: str
    correct_answers: list[str]
    subscription: str
    provider: str = "ollama"
    api_keys: dict[str, str] = field(default_factory=dict)


def provider_display_name(provider: str) -> str:
    return provider[:1].upper() + provider[1:]


def _cache_key(provider: str, question: str, correct_answers: list[str]) -> str:
    raw = "\x1f".join([provider, question.strip(), *correct_answers])
    return "explanation:" + hashlib.sha256(raw.encode()).hexdigest()


class ExplanationService:

    def can_use_provider(self, provider: str, subscription: str) -> bool:
        return subscription in _PROVIDER_TIERS.get(provider, ())

    def get_available_providers(self, subscription: str) -> list[str]:
        return [p for p, tiers in _PROVIDER_TIERS.items() if subscription in tiers]

    def generate_explanation(self, req: ExplanationRequest) -> str:
        """Generate (or return the cached) explanation for ``req``.

        Raises PermissionError when the tier can't use the provider,
        ValueError when a BYOK key is missing and AIProviderError when the
        provider call fails.
        """
        provider_name = req.provider
        if not self.can_use_provider(provider_name, req.subscription):
            raise PermissionError(f"Your subscription doesn't support {provider_name} explanations")

        api_key = None
        if provider_name in BYOK_PROVIDERS:
            api_key = req.api_keys.get(provider_name)
            if not api_key:
                raise ValueError(
                    f"Please add your {provider_display_name(provider_name)} API key in your profile settings."
                )

        cache = get_cache()
        key = _cache_key(provider_name, req.question, req.correct_answers)
        cached = cache.get(key)
        if isinstance(cached, str) and cached:
            logger.debug("Explanation cache hit: provider=%s", provider_name)
            return cached

        if provider_name == "ollama" and not check_provider_availability("ollama"):
            raise AIProviderError(
                "ollama", "network",
                "Ollama is not running. Please start Ollama or choose a different provider.",
            )

        provider = get_ai_provider(provider_name)
        explanation = provider.generate_explanation(req.question, req.correct_answers, api_key)
        cache.set(key, explanation, ttl=int(config_value("EXPLANATION_CACHE_TTL", 86400)))
        return explanation
