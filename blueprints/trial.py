"""Anonymous trial routes and the question-access gate."""

from __future__ import annotations

import ipaddress
import logging
import uuid
from dataclasses import asdict, fields
from functools import wraps
from typing import Any

from flask import Blueprint, current_app, jsonify, request, session as flask_session
from flask_login import current_user

from helpers import get_client_ip, json_body
from trial import (
    FingerprintComponents,
    TrialEvidence,
    TrialIdentity,
    TrialService,
    TrialState,
    TrialTimer,
    device_fingerprint,
    fallback_ip_id,
    now_ms,
)

logger = logging.getLogger(__name__)

bp = Blueprint("trial", __name__)

_STATE_KEY = "trial_state"
_STATE_FIELDS = {f.name for f in fields(TrialState)}


def trial_service() -> TrialService:
    cfg = current_app.config
    return TrialService(
        duration_ms=int(cfg.get("TRIAL_DURATION_MINUTES", 15)) * 60 * 1000,
        ip_window_ms=int(cfg.get("TRIAL_IP_WINDOW_MINUTES", 5)) * 60 * 1000,
    )


def _is_authenticated() -> bool:
    return bool(current_user.is_authenticated)


def _session_id(data: dict[str, Any]) -> str:
    """Client-persisted session id, else one kept in the signed cookie."""
    sid = str(data.get("sessionId") or request.headers.get("X-Trial-Session", "")).strip()
    if sid:
        return sid
    sid = flask_session.get("trial_session_id")
    if not sid:
        sid = f"session_{uuid.uuid4().hex}"
        flask_session["trial_session_id"] = sid
    return sid


def _fingerprint(data: dict[str, Any]) -> str:
    fp = str(data.get("fingerprint") or request.headers.get("X-Device-Fingerprint", "")).strip()
    if fp:
        return fp
    components = data.get("fingerprintComponents")
    if isinstance(components, dict):
        return device_fingerprint(FingerprintComponents.from_dict(components))
    return device_fingerprint(FingerprintComponents(
        canvas=request.headers.get("User-Agent", ""),
        language=request.headers.get("Accept-Language", ""),
    ))


def _ip_address(data: dict[str, Any]) -> str:
    ip = get_client_ip()
    try:
        ipaddress.ip_address(ip)
        return ip
    except ValueError:
        components = data.get("fingerprintComponents")
        if not isinstance(components, dict):
            components = {}
        return fallback_ip_id(
            request.headers.get("User-Agent", ""),
            str(components.get("language", "")),
            str(components.get("screen", "")),
        )


def identity_from_request(data: dict[str, Any] | None = None) -> TrialIdentity:
    data = data if data is not None else {}
    return TrialIdentity(
        session_id=_session_id(data),
        device_fingerprint=_fingerprint(data),
        ip_address=_ip_address(data),
        user_agent=request.headers.get("User-Agent", ""),
    )


def evidence_from_request(data: dict[str, Any]) -> TrialEvidence:
    """Merge client-reported traces with what the session cookie remembers."""
    reported = data.get("evidence") if isinstance(data.get("evidence"), dict) else {}
    return TrialEvidence(
        current_trial_id=str(reported.get("currentTrialId") or flask_session.get("current_trial_id") or ""),
        ip_fallback_id=str(reported.get("ipFallbackId") or ""),
        trial_ever_used=bool(reported.get("trialEverUsed") or flask_session.get("trial_ever_used")),
        session_trial_used=bool(reported.get("sessionTrialUsed")),
        local_session_id=bool(reported.get("localSessionId") or flask_session.get("trial_session_id")),
    )


def _load_state() -> TrialState | None:
    raw = flask_session.get(_STATE_KEY)
    if not isinstance(raw, dict):
        return None
    return TrialState(**{k: v for k, v in raw.items() if k in _STATE_FIELDS})


def _save_state(state: TrialState) -> None:
    flask_session[_STATE_KEY] = asdict(state)
    if state.trial_id:
        flask_session["current_trial_id"] = state.trial_id
    if state.trial_expired or state.trial_blocked or state.trial_id:
        flask_session["trial_ever_used"] = True


def current_trial_state(initialize: bool = False) -> TrialState | None:
    """Ticked trial state for this visitor; initializes one on demand."""
    service = trial_service()
    authenticated = _is_authenticated()
    state = _load_state()
    if state is not None and state.trial_start_time is None and not state.is_access_blocked and not authenticated:
        # Saved while signed in; an anonymous visitor must go through the trial policy.
        state = None
    if state is None:
        if not initialize:
            return None
        data = json_body()
        evidence = evidence_from_request(data)
        state = service.initialize(identity_from_request(data), authenticated, evidence, now_ms())
    else:
        state.authenticated = authenticated
        state = service.tick(state, now_ms())
    _save_state(state)
    return state


def trial_required(f):
    """Gate a route behind an active trial or a signed-in account."""
    @wraps(f)
    def decorated(*args, **kwargs):
        if _is_authenticated() or not current_app.config["FEATURE_FLAGS"].get("trial_gating", True):
            return f(*args, **kwargs)
        state = current_trial_state(initialize=True)
        if state is not None and state.is_access_blocked:
            return jsonify({"error": "Your free trial has ended. Please sign in to continue.", "redirect": "/"}), 403
        return f(*args, **kwargs)
    return decorated


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@bp.route("/api/trial/init", methods=["POST"])
def api_trial_init() -> Any:
    data = json_body()
    evidence = evidence_from_request(data)
    identity = identity_from_request(data)
    state = trial_service().initialize(identity, _is_authenticated(), evidence, now_ms())
    _save_state(state)
    payload = state.to_dict()
    payload["session_id"] = identity.session_id
    payload["device_fingerprint"] = identity.device_fingerprint
    return jsonify(payload)


@bp.route("/api/trial/status")
def api_trial_status() -> Any:
    if _is_authenticated():
        return jsonify(TrialState(authenticated=True, time_remaining=trial_service().duration_ms).to_dict())
    state = current_trial_state(initialize=False)
    if state is None:
        state = TrialState(time_remaining=trial_service().duration_ms)
    return jsonify(state.to_dict())


@bp.route("/api/trial/expire", methods=["POST"])
def api_trial_expire() -> Any:
    state = _load_state()
    trial_id = (state.trial_id if state else None) or flask_session.get("current_trial_id")
    if trial_id:
        trial_service().expire_trial(trial_id)
    expired = TrialState(trial_expired=True, trial_blocked=True, time_remaining=0)
    _save_state(expired)
    flask_session["trial_ever_used"] = True
    return jsonify(expired.to_dict())


@bp.route("/api/trial/timer")
def api_trial_timer() -> Any:
    timer = TrialTimer(flask_session, duration_ms=trial_service().duration_ms)
    return jsonify(timer.status(_is_authenticated(), now_ms()))


@bp.route("/api/trial/timer/reset", methods=["POST"])
def api_trial_timer_reset() -> Any:
    TrialTimer(flask_session).reset()
    return jsonify({"success": True})
