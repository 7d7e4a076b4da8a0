"""
Blueprint registration for the Practice Exams Platform API.

All blueprints are registered without URL prefixes; routes carry their full /api paths.
"""

from __future__ import annotations


def register_blueprints(app):
    from blueprints.core import bp as core_bp
    from blueprints.trial import bp as trial_bp
    from blueprints.questions import bp as questions_bp
    from blueprints.explanations import bp as explanations_bp
    from blueprints.profile import bp as profile_bp
    from blueprints.billing import bp as billing_bp

    app.register_blueprint(core_bp)
    app.register_blueprint(trial_bp)
    app.register_blueprint(questions_bp)
    app.register_blueprint(explanations_bp)
    app.register_blueprint(profile_bp)
    app.register_blueprint(billing_bp)
