from __future__ import annotations

from typing import Any, Dict

from flask import abort, current_app, g, request, session

from keyshop.errors import ValidationError
from keyshop.g2a.client import G2AClient, get_g2a_client
from keyshop.services.cache_service import CacheStore, get_cache_store
from keyshop.services.email_service import EmailService


def current_user_id() -> int:
    user_id = session.get("user_id")
    if user_id is None:
        abort(401)
    return int(user_id)


def require_admin() -> None:
    current_user_id()
    user = getattr(g, "current_user", None)
    if user is None or not user.is_admin:
        abort(403)


def json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


# Tests and embedding apps can swap collaborators through app.extensions
def g2a_client() -> G2AClient:
    return current_app.extensions.get("g2a_client") or get_g2a_client()


def cache_store() -> CacheStore:
    return current_app.extensions.get("cache_store") or get_cache_store()


def email_service() -> EmailService:
    return current_app.extensions.get("email_service") or EmailService()
