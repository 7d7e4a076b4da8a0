"""
Application configuration — environment-aware settings.

All environment variables are documented here. See .env.example for a template.
"""

from __future__ import annotations

import os
import warnings
from pathlib import Path

BASE_DIR = Path(__file__).parent


# ---------------------------------------------------------------------------
# Feature flags — simple dict, no external service
# ---------------------------------------------------------------------------
FEATURE_FLAGS: dict[str, bool] = {
    "trial_gating": True,
    "ai_explanations": True,
    "stripe_payments": True,
}


class BaseConfig:
    # Core Flask
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-key-change-in-production")
    DATABASE = os.environ.get("DATABASE_URL", str(BASE_DIR / "practice_exams.db"))
    WTF_CSRF_ENABLED = True

    # Session security
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    PERMANENT_SESSION_LIFETIME = 86400

    MAX_CONTENT_LENGTH = 1 * 1024 * 1024  # 1 MB

    # Trial gating for anonymous visitors
    TRIAL_DURATION_MINUTES = int(os.environ.get("TRIAL_DURATION_MINUTES", "15"))
    TRIAL_IP_WINDOW_MINUTES = int(os.environ.get("TRIAL_IP_WINDOW_MINUTES", "5"))

    # Question banks (GitHub-hosted markdown)
    QUESTIONS_CACHE_TTL = int(os.environ.get("QUESTIONS_CACHE_TTL", "600"))
    QUESTIONS_FETCH_TIMEOUT = int(os.environ.get("QUESTIONS_FETCH_TIMEOUT", "15"))
    QUESTIONS_ALLOWED_HOSTS = [
        h.strip() for h in os.environ.get(
            "QUESTIONS_ALLOWED_HOSTS", "raw.githubusercontent.com,github.com"
        ).split(",") if h.strip()
    ]

    # AI providers
    OLLAMA_BASE_URL = os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434")
    OLLAMA_MODEL = os.environ.get("OLLAMA_MODEL", "mistral")
    DITECTREV_AI_KEY = os.environ.get("DITECTREV_AI_KEY", "")
    EXPLANATION_CACHE_TTL = int(os.environ.get("EXPLANATION_CACHE_TTL", "86400"))
    AI_REQUEST_TIMEOUT = float(os.environ.get("AI_REQUEST_TIMEOUT", "60"))
    AI_RETRY_ATTEMPTS = 3
    AI_RETRY_DELAY = 1.0

    # Encryption of user-supplied provider API keys
    ENCRYPTION_SECRET = os.environ.get("ENCRYPTION_SECRET", "")

    # Logging
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # "json" or "text"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    BASE_URL = os.environ.get("BASE_URL", "http://localhost:5001")
    CRON_SECRET = os.environ.get("CRON_SECRET", "")
    SCHEDULER_ENABLED = os.environ.get("SCHEDULER_ENABLED", "1") not in ("0", "false", "False")

    # Redis
    REDIS_URL = os.environ.get("REDIS_URL", "")

    # Stripe payments
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
    STRIPE_PUBLISHABLE_KEY = os.environ.get("STRIPE_PUBLISHABLE_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    STRIPE_PRICE_ADS_FREE = os.environ.get("STRIPE_PRICE_ADS_FREE", "")
    STRIPE_PRICE_LOCAL = os.environ.get("STRIPE_PRICE_LOCAL", "")
    STRIPE_PRICE_BYOK = os.environ.get("STRIPE_PRICE_BYOK", "")
    STRIPE_PRICE_DITECTREV = os.environ.get("STRIPE_PRICE_DITECTREV", "")

    # Response compression
    COMPRESS_MIMETYPES = ["application/json", "text/plain"]
    COMPRESS_MIN_SIZE = 500

    # Rate limiting (defaults to in-memory; set REDIS_URL for Redis-backed)
    RATELIMIT_STORAGE_URI = os.environ.get("REDIS_URL", "") or "memory://"

    FEATURE_FLAGS = FEATURE_FLAGS


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")
    SESSION_COOKIE_SECURE = True

    @classmethod
    def validate(cls):
        """Fail fast on missing or insecure configuration in production."""
        errors: list[str] = []

        if cls.SECRET_KEY in ("dev-key-change-in-production", ""):
            errors.append("SECRET_KEY must be set to a secure value in production.")

        if not cls.ENCRYPTION_SECRET:
            errors.append("ENCRYPTION_SECRET must be set so stored API keys are encrypted.")

        if not cls.DITECTREV_AI_KEY:
            warnings.warn("DITECTREV_AI_KEY is not set; Ditectrev explanations will be unavailable.")

        if cls.STRIPE_SECRET_KEY and not cls.STRIPE_WEBHOOK_SECRET:
            warnings.warn("STRIPE_WEBHOOK_SECRET is not set; subscription webhooks will be rejected.")

        if errors:
            raise RuntimeError(
                "Production configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            )


class TestingConfig(BaseConfig):
    TESTING = True
    WTF_CSRF_ENABLED = False
    RATELIMIT_ENABLED = False
    AI_RETRY_DELAY = 0.0
    ENCRYPTION_SECRET = "test-encryption-secret"


config_by_name = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}
