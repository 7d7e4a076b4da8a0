"""AI explanation providers.

One class per vendor behind a common interface. OpenAI, Mistral, DeepSeek,
Ollama and Ditectrev all speak the OpenAI chat-completions protocol and go
through the ``openai`` SDK with a vendor base URL; Gemini uses
``google.generativeai``.

Every call runs through ai_resilience (circuit breaker + cost tracking) and
with_retry (tenacity), which never retries auth or validation failures.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, TypeVar

import google.generativeai as genai
import openai
import requests
from google.api_core import exceptions as google_exceptions
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_incrementing

from ai_resilience import resilient_llm_call
from helpers import config_value

logger = logging.getLogger(__name__)

T = TypeVar("T")

ERROR_TYPES = ("network", "auth", "rate_limit", "validation", "timeout")

DEFAULT_MAX_TOKENS = 2000
DEFAULT_TEMPERATURE = 0.7

EXPLANATION_PROMPT = (
    "Question: {question}\n\nCorrect answers: {answers}\n\n"
    "Please provide a clear and concise explanation of why these answers are correct. "
    "Focus on the key concepts and reasoning."
)


class AIProviderError(Exception):
    """A provider call failed. ``type`` is one of ERROR_TYPES."""

    def __init__(self, provider: str, type: str, message: str, original: BaseException | None = None):
        super().__init__(message)
        self.provider = provider
        self.type = type
        self.original = original

    @property
    def retryable(self) -> bool:
        return self.type not in ("auth", "validation")

    @property
    def trips_breaker(self) -> bool:
        return self.type in ("network", "timeout")


def error_type_for_status(status: int) -> str:
    if status in (401, 403):
        return "auth"
    if status == 429:
        return "rate_limit"
    if status == 400:
        return "validation"
    return "network"


def _status_message(label: str, status: int, detail: str) -> str:
    if status in (401, 403):
        return f"Authentication failed: {detail}"
    if status == 429:
        return f"Rate limit exceeded: {detail}"
    if status == 400:
        return f"Invalid request: {detail}"
    if status >= 500:
        return f"{label} server error: {detail}"
    return f"{label} API error: {detail}"


def with_retry(operation: Callable[[], T], max_attempts: int = 3, delay: float = 1.0) -> T:
    """Run ``operation`` with linear backoff (delay, 2*delay, ...).

    AIProviderErrors of type auth or validation are raised immediately.
    """
    retryer = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_incrementing(start=delay, increment=delay),
        retry=retry_if_exception(
            lambda exc: not (isinstance(exc, AIProviderError) and not exc.retryable)
        ),
        reraise=True,
    )
    return retryer(operation)


# ---------------------------------------------------------------------------
# Base provider
# ---------------------------------------------------------------------------

class AIProvider:
    name = ""
    label = ""
    model = ""
    requires_api_key = False
    temperature = DEFAULT_TEMPERATURE
    max_tokens = DEFAULT_MAX_TOKENS

    def validate_config(self, api_key: str | None = None) -> bool:
        return True

    def is_available(self) -> bool:
        return True

    def build_prompt(self, question: str, correct_answers: list[str]) -> str:
        return EXPLANATION_PROMPT.format(question=question, answers=", ".join(correct_answers))

    def _validate_request(self, question: str, correct_answers: list[str], api_key: str | None) -> None:
        if not (question or "").strip():
            raise AIProviderError(self.name, "validation", "Question cannot be empty")
        if not correct_answers:
            raise AIProviderError(self.name, "validation", "At least one correct answer is required")
        if self.requires_api_key and not self.validate_config(api_key):
            raise AIProviderError(self.name, "auth", f"Invalid {self.label} API key format")

    def _complete(self, prompt: str, api_key: str | None) -> str:
        raise NotImplementedError

    def generate_explanation(
        self,
        question: str,
        correct_answers: list[str],
        api_key: str | None = None,
    ) -> str:
        self._validate_request(question, correct_answers, api_key)
        prompt = self.build_prompt(question, correct_answers)
        attempts = int(config_value("AI_RETRY_ATTEMPTS", 3))
        delay = float(config_value("AI_RETRY_DELAY", 1.0))
        text, _ = resilient_llm_call(
            self.name,
            self.model,
            prompt,
            lambda: with_retry(lambda: self._complete(prompt, api_key), attempts, delay),
        )
        return text


# ---------------------------------------------------------------------------
# OpenAI-compatible vendors
# ---------------------------------------------------------------------------

class OpenAICompatibleProvider(AIProvider):
    base_url: str | None = None
    system_prompt = ""

    def _client(self, api_key: str | None) -> openai.OpenAI:
        return openai.OpenAI(
            api_key=api_key,
            base_url=self.base_url,
            timeout=float(config_value("AI_REQUEST_TIMEOUT", 60.0)),
            max_retries=0,
        )

    def _messages(self, prompt: str) -> list[dict[str, str]]:
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": prompt})
        return messages

    def _error_for_status(self, status: int, detail: str) -> AIProviderError:
        return AIProviderError(self.name, error_type_for_status(status), _status_message(self.label, status, detail))

    def _complete(self, prompt: str, api_key: str | None) -> str:
        try:
            response = self._client(api_key).chat.completions.create(
                model=self.model,
                messages=self._messages(prompt),
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except openai.APITimeoutError as exc:
            raise AIProviderError(self.name, "timeout", f"{self.label} request timed out", exc) from exc
        except openai.APIStatusError as exc:
            err = self._error_for_status(exc.status_code, exc.message)
            err.original = exc
            raise err from exc
        except openai.OpenAIError as exc:
            raise AIProviderError(self.name, "network", f"{self.label} request failed: {exc}", exc) from exc

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise AIProviderError(self.name, "validation", f"Invalid response structure from {self.label}")
        return content


class OpenAIProvider(OpenAICompatibleProvider):
    name = "openai"
    label = "OpenAI"
    model = "gpt-4o-mini"
    requires_api_key = True

    def validate_config(self, api_key: str | None = None) -> bool:
        return bool(api_key and api_key.startswith("sk-") and len(api_key) > 20)


class MistralProvider(OpenAICompatibleProvider):
    name = "mistral"
    label = "Mistral"
    model = "mistral-medium-latest"
    base_url = "https://api.mistral.ai/v1"
    requires_api_key = True

    def validate_config(self, api_key: str | None = None) -> bool:
        return bool(api_key and len(api_key) > 20)


class DeepSeekProvider(OpenAICompatibleProvider):
    name = "deepseek"
    label = "DeepSeek"
    model = "deepseek-chat"
    base_url = "https://api.deepseek.com/v1"
    requires_api_key = True

    def validate_config(self, api_key: str | None = None) -> bool:
        return bool(api_key and len(api_key) > 20)


class OllamaProvider(OpenAICompatibleProvider):
    """Local Ollama server. No key; the model runs on the operator's machine."""

    name = "ollama"
    label = "Ollama"

    @property
    def host(self) -> str:
        return str(config_value("OLLAMA_BASE_URL", "http://localhost:11434")).rstrip("/")

    @property
    def model(self) -> str:  # type: ignore[override]
        return str(config_value("OLLAMA_MODEL", "mistral"))

    @property
    def base_url(self) -> str:  # type: ignore[override]
        return f"{self.host}/v1"

    def build_prompt(self, question: str, correct_answers: list[str]) -> str:
        return f"{question} Explain why these answers are correct: {', '.join(correct_answers)}"

    def _client(self, api_key: str | None) -> openai.OpenAI:
        # Ollama ignores the key but the SDK requires one.
        return super()._client("ollama")

    def is_available(self) -> bool:
        try:
            return requests.get(f"{self.host}/api/tags", timeout=3).ok
        except requests.RequestException:
            return False


class DitectrevProvider(OpenAICompatibleProvider):
    """House provider: Mistral under the platform's own key."""

    name = "ditectrev"
    label = "Ditectrev"
    model = "mistral-medium-latest"
    base_url = "https://api.mistral.ai/v1"
    temperature = 0.3
    system_prompt = (
        "You are an expert educator providing detailed explanations for exam questions. "
        "Provide comprehensive, accurate, and pedagogically sound explanations."
    )

    def build_prompt(self, question: str, correct_answers: list[str]) -> str:
        return (
            f"Question: {question}\n\nCorrect answers: {', '.join(correct_answers)}\n\n"
            "Please provide a detailed, expert-level explanation of why these answers are correct. "
            "Focus on the key concepts and reasoning that make these the correct choices."
        )

    def _complete(self, prompt: str, api_key: str | None) -> str:
        server_key = config_value("DITECTREV_AI_KEY", "")
        if not server_key:
            raise AIProviderError(self.name, "auth", "DITECTREV_AI_KEY not configured")
        return super()._complete(prompt, server_key)


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------

# genai.configure() is process-global, so calls with different user keys must not interleave.
_genai_lock = threading.Lock()

_GEMINI_INVALID_KEY_MARKERS = ("API_KEY_INVALID", "invalid API key", "API key not valid")


class GeminiProvider(AIProvider):
    name = "gemini"
    label = "Gemini"
    model = "gemini-2.0-flash"
    requires_api_key = True

    def validate_config(self, api_key: str | None = None) -> bool:
        return bool(api_key and len(api_key) > 30 and api_key.startswith("AIza"))

    def _error_for_status(self, status: int, detail: str) -> AIProviderError:
        if status == 400 and any(m in detail for m in _GEMINI_INVALID_KEY_MARKERS):
            return AIProviderError(self.name, "auth", f"Invalid Gemini API key: {detail}")
        if status == 403:
            return AIProviderError(self.name, "auth", f"Access denied: {detail}")
        return AIProviderError(self.name, error_type_for_status(status), _status_message(self.label, status, detail))

    def _complete(self, prompt: str, api_key: str | None) -> str:
        try:
            with _genai_lock:
                genai.configure(api_key=api_key)
                model = genai.GenerativeModel(self.model)
                response = model.generate_content(
                    prompt,
                    generation_config={
                        "max_output_tokens": self.max_tokens,
                        "temperature": self.temperature,
                    },
                )
        except google_exceptions.DeadlineExceeded as exc:
            raise AIProviderError(self.name, "timeout", "Gemini request timed out", exc) from exc
        except google_exceptions.GoogleAPICallError as exc:
            err = self._error_for_status(int(exc.code or 0), exc.message or str(exc))
            err.original = exc
            raise err from exc

        try:
            text = response.text
        except ValueError as exc:
            # Raised when the response has no candidates (e.g. blocked by safety filters).
            raise AIProviderError(self.name, "validation", "Invalid response structure from Gemini", exc) from exc
        if not text:
            raise AIProviderError(self.name, "validation", "Invalid response structure from Gemini")
        return text


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

PROVIDERS: dict[str, type[AIProvider]] = {
    "ollama": OllamaProvider,
    "openai": OpenAIProvider,
    "gemini": GeminiProvider,
    "mistral": MistralProvider,
    "deepseek": DeepSeekProvider,
    "ditectrev": DitectrevProvider,
}


def get_ai_provider(name: str) -> AIProvider:
    try:
        return PROVIDERS[name]()
    except KeyError:
        raise ValueError(f"Unknown AI provider: {name}") from None


def check_provider_availability(name: str, api_key: str | None = None) -> bool:
    """True when the provider exists, accepts the key and is reachable."""
    try:
        provider = get_ai_provider(name)
    except ValueError:
        return False
    if not provider.validate_config(api_key):
        return False
    try:
        return provider.is_available()
    except Exception as e:
        logger.warning("Availability check failed for %s: %s", name, e)
        return False
