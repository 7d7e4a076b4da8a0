"""Tests for the AI resilience layer."""

from __future__ import annotations

import time
from unittest.mock import MagicMock, patch

import pytest

from ai_resilience import (
    CircuitBreaker,
    CircuitOpenError,
    CostTracker,
    TTLCache,
    get_circuit_breaker,
    resilient_llm_call,
)


# ── TTLCache Tests ──────────────────────────────────────────


class TestTTLCache:
    def test_set_and_get(self):
        cache = TTLCache()
        cache.set("k1", "v1", ttl_seconds=60)
        assert cache.get("k1") == "v1"

    def test_expired_entry_returns_none(self):
        cache = TTLCache()
        cache.set("k2", "v2", ttl_seconds=0)
        time.sleep(0.01)
        assert cache.get("k2") is None

    def test_missing_key_returns_none(self):
        cache = TTLCache()
        assert cache.get("nonexistent") is None

    def test_eviction_drops_earliest_expiry(self):
        cache = TTLCache()
        cache.MAX_ENTRIES = 3
        cache.set("a", "1", ttl_seconds=10)
        cache.set("b", "2", ttl_seconds=20)
        cache.set("c", "3", ttl_seconds=30)
        cache.set("d", "4", ttl_seconds=40)
        assert cache.get("a") is None
        assert cache.get("d") == "4"
        assert len(cache) == 3

    def test_overwrite_does_not_evict(self):
        cache = TTLCache()
        cache.MAX_ENTRIES = 2
        cache.set("a", "1", ttl_seconds=10)
        cache.set("b", "2", ttl_seconds=20)
        cache.set("a", "updated", ttl_seconds=30)
        assert cache.get("a") == "updated"
        assert cache.get("b") == "2"

    def test_cleanup_removes_expired(self):
        cache = TTLCache()
        cache.set("exp1", "val", ttl_seconds=0)
        cache.set("exp2", "val", ttl_seconds=0)
        cache.set("keep", "val", ttl_seconds=60)
        time.sleep(0.01)
        removed = cache.cleanup()
        assert removed == 2
        assert cache.get("keep") == "val"

    def test_delete_and_clear(self):
        cache = TTLCache()
        cache.set("x", "y", ttl_seconds=60)
        cache.set("z", "w", ttl_seconds=60)
        cache.delete("x")
        assert cache.get("x") is None
        cache.clear()
        assert len(cache) == 0


# ── CircuitBreaker Tests ────────────────────────────────────


class TestCircuitBreaker:
    def test_starts_closed(self):
        cb = CircuitBreaker()
        assert cb.get_state("openai") == "closed"
        assert cb.is_open("openai") is False

    def test_opens_after_threshold(self):
        cb = CircuitBreaker()
        for _ in range(CircuitBreaker.FAILURE_THRESHOLD):
            cb.record_failure("openai")
        assert cb.get_state("openai") == "open"
        assert cb.is_open("openai") is True

    def test_below_threshold_stays_closed(self):
        cb = CircuitBreaker()
        for _ in range(CircuitBreaker.FAILURE_THRESHOLD - 1):
            cb.record_failure("openai")
        assert cb.is_open("openai") is False

    def test_providers_are_independent(self):
        cb = CircuitBreaker()
        for _ in range(CircuitBreaker.FAILURE_THRESHOLD):
            cb.record_failure("openai")
        assert cb.is_open("gemini") is False

    def test_half_open_after_recovery_timeout(self):
        cb = CircuitBreaker()
        for _ in range(CircuitBreaker.FAILURE_THRESHOLD):
            cb.record_failure("mistral")
        with patch("ai_resilience.time.time", return_value=time.time() + CircuitBreaker.RECOVERY_TIMEOUT + 1):
            assert cb.is_open("mistral") is False
        assert cb.get_state("mistral") == "half_open"

    def test_success_closes(self):
        cb = CircuitBreaker()
        for _ in range(CircuitBreaker.FAILURE_THRESHOLD):
            cb.record_failure("deepseek")
        cb.record_success("deepseek")
        assert cb.get_state("deepseek") == "closed"


# ── CostTracker Tests ───────────────────────────────────────


class TestCostTracker:
    def test_estimate_tokens(self):
        assert CostTracker.estimate_tokens("") == 1
        assert CostTracker.estimate_tokens("a" * 400) == 100

    def test_known_model_pricing(self):
        metrics = CostTracker.track_call("gpt-4o-mini", "a" * 4_000_000, "", 10, "openai")
        assert metrics["input_tokens_est"] == 1_000_000
        assert metrics["cost_estimate_usd"] == pytest.approx(0.15, abs=1e-5)

    def test_ollama_is_free(self):
        metrics = CostTracker.track_call("llama3.2", "a" * 4000, "b" * 4000, 10, "ollama")
        assert metrics["cost_estimate_usd"] == 0.0
        assert metrics["total_tokens_est"] == 2000


# ── resilient_llm_call Tests ────────────────────────────────


class TestResilientCall:
    def test_returns_text_and_metrics(self):
        text, metrics = resilient_llm_call("openai", "gpt-4o-mini", "prompt", lambda: "answer")
        assert text == "answer"
        assert metrics["provider"] == "openai"
        assert metrics["model"] == "gpt-4o-mini"
        assert "latency_ms" in metrics

    def test_failure_recorded_and_reraised(self):
        call = MagicMock(side_effect=ConnectionError("down"))
        for _ in range(CircuitBreaker.FAILURE_THRESHOLD):
            with pytest.raises(ConnectionError):
                resilient_llm_call("gemini", "gemini-2.0-flash", "p", call)
        assert get_circuit_breaker().get_state("gemini") == "open"

        with pytest.raises(CircuitOpenError):
            resilient_llm_call("gemini", "gemini-2.0-flash", "p", call)
        assert call.call_count == CircuitBreaker.FAILURE_THRESHOLD

    def test_caller_errors_do_not_trip(self):
        error = ValueError("bad key")
        error.trips_breaker = False
        for _ in range(CircuitBreaker.FAILURE_THRESHOLD + 1):
            with pytest.raises(ValueError):
                resilient_llm_call("openai", "gpt-4o-mini", "p", MagicMock(side_effect=error))
        assert get_circuit_breaker().get_state("openai") == "closed"

    def test_success_resets_failures(self):
        breaker = get_circuit_breaker()
        breaker.record_failure("mistral")
        breaker.record_failure("mistral")
        resilient_llm_call("mistral", "mistral-medium-latest", "p", lambda: "ok")
        breaker.record_failure("mistral")
        assert breaker.get_state("mistral") == "closed"
