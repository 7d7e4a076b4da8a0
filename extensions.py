"""
Shared extension singletons (rate limiter, provider registry).

Kept out of app.py so blueprints can import them without circular imports.
"""

from __future__ import annotations

import os


def _create_limiter():
    """Create a real Limiter or a no-op stub depending on environment."""
    if os.environ.get("VERCEL"):
        # No shared state between serverless invocations, so limits are meaningless.
        class _NoOpLimiter:
            enabled = False
            def init_app(self, app): pass
            def limit(self, *a, **kw):
                def decorator(f): return f
                return decorator
        return _NoOpLimiter()

    from flask_limiter import Limiter
    from flask_limiter.util import get_remote_address
    return Limiter(key_func=get_remote_address, default_limits=["300 per hour"])


limiter = _create_limiter()


class ServiceManager:
    """Lazy-loaded singletons for the question bank and explanation service."""

    _question_bank = None
    _explanations = None

    @classmethod
    def get_question_bank(cls):
        if cls._question_bank is None:
            from questions import QuestionBank
            cls._question_bank = QuestionBank()
        return cls._question_bank

    @classmethod
    def get_explanation_service(cls):
        if cls._explanations is None:
            from explanation_service import ExplanationService
            cls._explanations = ExplanationService()
        return cls._explanations

    @classmethod
    def reset(cls):
        cls._question_bank = None
        cls._explanations = None
