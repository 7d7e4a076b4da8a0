"""Tests for explanation_service.py and the explanation routes."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from ai_providers import AIProviderError
from explanation_service import ExplanationRequest, ExplanationService

QUESTION = "Which service stores objects?"
ANSWERS = ["S3"]
OPENAI_KEY = "sk-" + "a" * 40
BODY = {"question": QUESTION, "correctAnswers": ANSWERS}


def _provider(text="Because S3 is object storage.", side_effect=None):
    provider = MagicMock()
    provider.generate_explanation.return_value = text
    provider.generate_explanation.side_effect = side_effect
    return provider


def _save_settings(app, provider=None, api_keys=None):
    with app.app_context():
        from settings_store import UserSettingsStoreDB
        store = UserSettingsStoreDB(1)
        if provider:
            store.set_explanation_provider(provider)
        if api_keys:
            store.set_api_keys(api_keys)


class TestProviderAccess:
    @pytest.mark.parametrize("provider, subscription, allowed", [
        ("ollama", "free", False),
        ("ollama", "ads-free", False),
        ("ollama", "local", True),
        ("ollama", "byok", True),
        ("openai", "local", False),
        ("openai", "byok", True),
        ("gemini", "ditectrev", True),
        ("ditectrev", "byok", False),
        ("ditectrev", "ditectrev", True),
        ("unknown", "ditectrev", False),
    ])
    def test_can_use_provider(self, provider, subscription, allowed):
        assert ExplanationService().can_use_provider(provider, subscription) is allowed

    def test_available_providers(self):
        service = ExplanationService()
        assert service.get_available_providers("free") == []
        assert service.get_available_providers("local") == ["ollama"]
        assert service.get_available_providers("byok") == ["ollama", "openai", "gemini", "mistral", "deepseek"]
        assert "ditectrev" in service.get_available_providers("ditectrev")


class TestGenerateExplanation:
    def test_tier_not_allowed(self, app):
        req = ExplanationRequest(QUESTION, ANSWERS, subscription="local", provider="openai")
        with pytest.raises(PermissionError):
            ExplanationService().generate_explanation(req)

    def test_missing_byok_key(self, app):
        req = ExplanationRequest(QUESTION, ANSWERS, subscription="byok", provider="gemini")
        with pytest.raises(ValueError, match="Please add your Gemini API key"):
            ExplanationService().generate_explanation(req)

    def test_passes_user_key_and_caches(self, app):
        provider = _provider()
        req = ExplanationRequest(QUESTION, ANSWERS, subscription="byok", provider="openai",
                                 api_keys={"openai": OPENAI_KEY})
        with patch("explanation_service.get_ai_provider", return_value=provider):
            first = ExplanationService().generate_explanation(req)
            second = ExplanationService().generate_explanation(req)
        assert first == second == "Because S3 is object storage."
        provider.generate_explanation.assert_called_once_with(QUESTION, ANSWERS, OPENAI_KEY)

    def test_cache_is_per_provider(self, app):
        provider = _provider()
        with patch("explanation_service.get_ai_provider", return_value=provider):
            for name in ("openai", "mistral"):
                ExplanationService().generate_explanation(ExplanationRequest(
                    QUESTION, ANSWERS, subscription="byok", provider=name, api_keys={name: "k" * 40},
                ))
        assert provider.generate_explanation.call_count == 2

    def test_ollama_not_running(self, app):
        req = ExplanationRequest(QUESTION, ANSWERS, subscription="local", provider="ollama")
        with patch("explanation_service.check_provider_availability", return_value=False):
            with pytest.raises(AIProviderError, match="Ollama is not running"):
                ExplanationService().generate_explanation(req)

    def test_provider_error_not_cached(self, app):
        failing = _provider(side_effect=AIProviderError("ollama", "network", "down"))
        req = ExplanationRequest(QUESTION, ANSWERS, subscription="local", provider="ollama")
        with patch("explanation_service.check_provider_availability", return_value=True), \
                patch("explanation_service.get_ai_provider", return_value=failing):
            with pytest.raises(AIProviderError):
                ExplanationService().generate_explanation(req)
        working = _provider("Now it works")
        with patch("explanation_service.check_provider_availability", return_value=True), \
                patch("explanation_service.get_ai_provider", return_value=working):
            assert ExplanationService().generate_explanation(req) == "Now it works"


class TestExplanationsRoute:
    def test_missing_question(self, auth_client):
        resp = auth_client.post("/api/explanations", json={"correctAnswers": ANSWERS})
        assert resp.status_code == 400

    def test_missing_answers(self, auth_client):
        resp = auth_client.post("/api/explanations", json={"question": QUESTION, "correctAnswers": []})
        assert resp.status_code == 400

    def test_requires_login(self, client):
        resp = client.post("/api/explanations", json=BODY)
        assert resp.status_code == 401

    def test_free_tier_forbidden(self, auth_client):
        resp = auth_client.post("/api/explanations", json=BODY)
        assert resp.status_code == 403
        assert "upgrade" in resp.get_json()["error"]

    def test_ditectrev_provider_needs_ditectrev_tier(self, app, auth_client, set_subscription):
        set_subscription("byok")
        _save_settings(app, provider="ditectrev")
        resp = auth_client.post("/api/explanations", json=BODY)
        assert resp.status_code == 403

    def test_byok_provider_needs_byok_tier(self, app, auth_client, set_subscription):
        set_subscription("local")
        _save_settings(app, provider="openai", api_keys={"openai": OPENAI_KEY})
        resp = auth_client.post("/api/explanations", json=BODY)
        assert resp.status_code == 403

    def test_byok_missing_key(self, app, auth_client, set_subscription):
        set_subscription("byok")
        _save_settings(app, provider="openai")
        resp = auth_client.post("/api/explanations", json=BODY)
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Please add your Openai API key in your profile settings."

    def test_byok_success_uses_stored_key(self, app, auth_client, set_subscription):
        set_subscription("byok")
        _save_settings(app, provider="openai", api_keys={"openai": OPENAI_KEY})
        provider = _provider()
        with patch("explanation_service.get_ai_provider", return_value=provider):
            resp = auth_client.post("/api/explanations", json=BODY)
        assert resp.status_code == 200
        assert resp.get_json() == {"explanation": "Because S3 is object storage.", "provider": "openai"}
        provider.generate_explanation.assert_called_once_with(QUESTION, ANSWERS, OPENAI_KEY)

    def test_local_tier_defaults_to_ollama(self, auth_client, set_subscription):
        set_subscription("local")
        provider = _provider("Local model says S3")
        with patch("explanation_service.check_provider_availability", return_value=True), \
                patch("explanation_service.get_ai_provider", return_value=provider):
            resp = auth_client.post("/api/explanations", json=BODY)
        assert resp.get_json()["provider"] == "ollama"

    def test_provider_failure_is_500(self, auth_client, set_subscription):
        set_subscription("local")
        with patch("explanation_service.check_provider_availability", return_value=False):
            resp = auth_client.post("/api/explanations", json=BODY)
        assert resp.status_code == 500
        assert "Ollama is not running" in resp.get_json()["error"]


class TestDirectProviderRoute:
    def test_unknown_provider(self, client):
        assert client.post("/api/ai/cohere", json=BODY).status_code == 404

    def test_byok_requires_api_key(self, client):
        resp = client.post("/api/ai/openai", json=BODY)
        assert resp.status_code == 400
        assert "OpenAI API key is required" in resp.get_json()["error"]

    def test_byok_with_key(self, client):
        provider = _provider("Direct answer")
        with patch.dict("ai_providers.PROVIDERS", {"openai": MagicMock(return_value=provider)}):
            resp = client.post("/api/ai/openai", json={**BODY, "apiKey": OPENAI_KEY})
        assert resp.status_code == 200
        assert resp.get_json() == {"explanation": "Direct answer"}
        provider.generate_explanation.assert_called_once_with(QUESTION, ANSWERS, OPENAI_KEY)

    @pytest.mark.parametrize("error_type, status", [
        ("auth", 401), ("rate_limit", 429), ("network", 500), ("timeout", 500),
    ])
    def test_error_status_mapping(self, client, error_type, status):
        provider = _provider(side_effect=AIProviderError("gemini", error_type, "failed"))
        with patch.dict("ai_providers.PROVIDERS", {"gemini": MagicMock(return_value=provider)}):
            resp = client.post("/api/ai/gemini", json={**BODY, "apiKey": "AIza" + "b" * 35})
        assert resp.status_code == status
        assert resp.get_json()["type"] == error_type

    def test_ditectrev_requires_login(self, client):
        assert client.post("/api/ai/ditectrev", json=BODY).status_code == 401

    def test_ditectrev_requires_subscription(self, auth_client, set_subscription):
        set_subscription("byok")
        assert auth_client.post("/api/ai/ditectrev", json=BODY).status_code == 403

    def test_ditectrev_subscriber(self, auth_client, set_subscription):
        set_subscription("ditectrev")
        provider = _provider("Expert explanation")
        with patch.dict("ai_providers.PROVIDERS", {"ditectrev": MagicMock(return_value=provider)}):
            resp = auth_client.post("/api/ai/ditectrev", json=BODY)
        assert resp.get_json() == {"explanation": "Expert explanation"}
        provider.generate_explanation.assert_called_once_with(QUESTION, ANSWERS, None)
