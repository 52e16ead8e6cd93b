from __future__ import annotations

from flask import Blueprint, jsonify

from keyshop.database import get_db
from keyshop.errors import ValidationError
from keyshop.services.catalog_sync_service import CatalogSyncService

from .common import cache_store, g2a_client, json_body, require_admin

catalog_bp = Blueprint("catalog", __name__, url_prefix="/api/admin/g2a")


def _get_sync_service() -> CatalogSyncService:
    return CatalogSyncService(get_db(), g2a_client(), cache_store())


def _string_list(payload: dict, *names: str) -> list:
    for name in names:
        value = payload.get(name)
        if value is None:
            continue
        if isinstance(value, str):
            return [value]
        if not isinstance(value, list):
            raise ValidationError(f"{name} must be a list")
        return [str(item) for item in value]
    return []


@catalog_bp.route("/sync", methods=["POST"])
def sync_catalog():
    require_admin()
    payload = json_body()
    result = _get_sync_service().sync_catalog(
        full_sync=bool(payload.get("full_sync", payload.get("fullSync", False))),
        product_ids=_string_list(payload, "product_ids", "productIds"),
        categories=_string_list(payload, "categories"),
        include_relationships=bool(
            payload.get("include_relationships", payload.get("includeRelationships", False))
        ),
    )
    return jsonify({"success": True, "result": result.to_dict()})


@catalog_bp.route("/sync/progress", methods=["GET"])
def sync_progress():
    require_admin()
    return jsonify(_get_sync_service().get_sync_progress())


@catalog_bp.route("/sync/status", methods=["GET"])
def sync_status():
    require_admin()
    return jsonify(_get_sync_service().get_sync_status())


@catalog_bp.route("/test-connection", methods=["GET"])
def test_connection():
    require_admin()
    outcome = g2a_client().test_connection()
    return jsonify(outcome), 200 if outcome.get("success") else 502
