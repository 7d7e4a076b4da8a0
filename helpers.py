"""
Shared helpers used across blueprints.

Extracted from app.py to break circular dependencies.
"""

from __future__ import annotations

import re
from typing import Any

from flask import current_app, has_app_context, request
from flask_login import current_user

_IPV4_WITH_PORT = re.compile(r"^(\d{1,3}(?:\.\d{1,3}){3}):\d+$")
_BRACKETED_IPV6 = re.compile(r"^\[([0-9a-fA-F:.]+)\](?::\d+)?$")


def current_user_id() -> int | None:
    """Return the current authenticated user's ID, or None for anonymous visitors."""
    if current_user.is_authenticated:
        return current_user.id
    return None


def clean_ip(ip: str) -> str:
    """Strip a port suffix from ``1.2.3.4:5678`` or ``[::1]:5678`` forms.

    Bare IPv6 addresses are returned untouched.
    """
    ip = ip.strip()
    m = _IPV4_WITH_PORT.match(ip)
    if m:
        return m.group(1)
    m = _BRACKETED_IPV6.match(ip)
    if m:
        return m.group(1)
    return ip


def get_client_ip() -> str:
    """Best-effort client IP behind proxies and CDNs.

    Order: first X-Forwarded-For hop, X-Real-IP, CF-Connecting-IP, then the
    socket peer address.
    """
    forwarded = request.headers.get("X-Forwarded-For", "")
    ip = forwarded.split(",")[0].strip() if forwarded else ""
    ip = (
        ip
        or request.headers.get("X-Real-IP", "").strip()
        or request.headers.get("CF-Connecting-IP", "").strip()
        or request.remote_addr
        or "127.0.0.1"
    )
    return clean_ip(ip)


def json_body() -> dict[str, Any]:
    """Parsed JSON body, or {} when the body is missing or not an object."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def config_value(key: str, default: Any = None) -> Any:
    """App config lookup that also works outside an app context (CLI, tests)."""
    if has_app_context():
        return current_app.config.get(key, default)
    return default
