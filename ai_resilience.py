"""AI Resilience Layer — Circuit Breaker, Cache, Cost Tracking.

Provides resilient_llm_call(), which wraps a provider call with a
per-provider circuit breaker and cost/latency tracking. Retries live in
ai_providers.with_retry so auth and validation failures are never retried.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


# ── TTL Cache ───────────────────────────────────────────────

class TTLCache:
    """In-memory dict with expiry timestamps and eviction at 1000 entries."""

    MAX_ENTRIES = 1000

    def __init__(self) -> None:
        self._store: dict[str, tuple[str, float]] = {}  # key -> (value, expires_at)
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if time.time() > expires_at:
                del self._store[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: int = 86400) -> None:
        with self._lock:
            if len(self._store) >= self.MAX_ENTRIES and key not in self._store:
                self._evict_oldest()
            self._store[key] = (value, time.time() + ttl_seconds)

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def _evict_oldest(self) -> None:
        """Remove the entry with the earliest expiry."""
        if not self._store:
            return
        oldest_key = min(self._store, key=lambda k: self._store[k][1])
        del self._store[oldest_key]

    def cleanup(self) -> int:
        """Remove all expired entries. Returns count removed."""
        now = time.time()
        with self._lock:
            expired = [k for k, (_, exp) in self._store.items() if now > exp]
            for k in expired:
                del self._store[k]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)


# ── Circuit Breaker ─────────────────────────────────────────

@dataclass
class _ProviderState:
    failures: int = 0
    state: str = "closed"  # closed | open | half_open
    last_failure_time: float = 0.0


class CircuitOpenError(RuntimeError):
    """Raised instead of calling a provider whose breaker is open."""

    def __init__(self, provider: str):
        super().__init__(f"Circuit breaker open for provider: {provider}")
        self.provider = provider


class CircuitBreaker:
    """Per-provider state machine: closed -> open -> half_open -> closed."""

    FAILURE_THRESHOLD = 3
    RECOVERY_TIMEOUT = 60  # seconds

    def __init__(self) -> None:
        self._providers: dict[str, _ProviderState] = {}
        self._lock = threading.Lock()

    def _get_state(self, provider: str) -> _ProviderState:
        if provider not in self._providers:
            self._providers[provider] = _ProviderState()
        return self._providers[provider]

    def record_success(self, provider: str) -> None:
        with self._lock:
            state = self._get_state(provider)
            state.failures = 0
            state.state = "closed"

    def record_failure(self, provider: str) -> None:
        with self._lock:
            state = self._get_state(provider)
            state.failures += 1
            state.last_failure_time = time.time()
            if state.failures >= self.FAILURE_THRESHOLD:
                state.state = "open"

    def is_open(self, provider: str) -> bool:
        with self._lock:
            state = self._get_state(provider)
            if state.state == "closed":
                return False
            if state.state == "open":
                elapsed = time.time() - state.last_failure_time
                if elapsed >= self.RECOVERY_TIMEOUT:
                    state.state = "half_open"
                    return False  # allow one attempt
                return True
            # half_open — allow attempt
            return False

    def get_state(self, provider: str) -> str:
        with self._lock:
            return self._get_state(provider).state

    def reset(self) -> None:
        with self._lock:
            self._providers.clear()


_circuit_breaker = CircuitBreaker()


# ── Cost Tracker ────────────────────────────────────────────

# Approximate pricing per 1M tokens (input + output averaged)
_MODEL_PRICING: dict[str, float] = {
    "gpt-4o-mini": 0.15,
    "gemini-2.0-flash": 0.075,
    "mistral-medium-latest": 1.2,
    "deepseek-chat": 0.5,
}

# Self-hosted models cost nothing per token.
_FREE_PROVIDERS = ("ollama",)


class CostTracker:
    """Estimates tokens from character count and applies model-specific pricing."""

    @staticmethod
    def estimate_tokens(text: str) -> int:
        """Rough estimate: 1 token ~ 4 characters."""
        return max(1, len(text) // 4)

    @staticmethod
    def track_call(
        model: str,
        input_text: str,
        output_text: str,
        latency_ms: int,
        provider: str = "",
    ) -> dict:
        input_tokens = CostTracker.estimate_tokens(input_text)
        output_tokens = CostTracker.estimate_tokens(output_text)
        total_tokens = input_tokens + output_tokens

        if provider in _FREE_PROVIDERS:
            price_per_million = 0.0
        else:
            price_per_million = _MODEL_PRICING.get(model, 1.0)
        cost_usd = (total_tokens / 1_000_000) * price_per_million

        return {
            "input_tokens_est": input_tokens,
            "output_tokens_est": output_tokens,
            "total_tokens_est": total_tokens,
            "cost_estimate_usd": round(cost_usd, 6),
            "model": model,
            "latency_ms": latency_ms,
        }


# ── Main entry point ────────────────────────────────────────

def _trips_breaker(exc: BaseException) -> bool:
    # Errors caused by the caller (bad key, bad input) say nothing about provider health.
    return getattr(exc, "trips_breaker", True)


def resilient_llm_call(
    provider: str,
    model: str,
    prompt: str,
    call: Callable[[], str],
) -> tuple[str, dict]:
    """Run ``call`` behind the provider's circuit breaker.

    Returns:
        (response_text, metadata_dict) where metadata includes token
        estimates, cost, latency, provider and model.
    """
    if _circuit_breaker.is_open(provider):
        raise CircuitOpenError(provider)

    start = time.time()
    try:
        response_text = call()
    except Exception as exc:
        if _trips_breaker(exc):
            _circuit_breaker.record_failure(provider)
        raise

    latency_ms = int((time.time() - start) * 1000)
    _circuit_breaker.record_success(provider)

    metrics = CostTracker.track_call(model, prompt, response_text, latency_ms, provider)
    metrics["provider"] = provider
    logger.info(
        "LLM call: provider=%s model=%s latency_ms=%d tokens_est=%d cost_usd=%.6f",
        provider, model, latency_ms, metrics["total_tokens_est"], metrics["cost_estimate_usd"],
    )
    return response_text, metrics


def get_circuit_breaker() -> CircuitBreaker:
    """Access the module-level circuit breaker singleton."""
    return _circuit_breaker
