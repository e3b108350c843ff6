# -*- coding: utf-8 -*-
"""API проверки firewall для авторизованных пользователей."""

from __future__ import annotations

from flask import Blueprint, Response, jsonify, request
from flask_jwt_extended import get_jwt_identity, jwt_required

from ..orchestrator import CheckOrchestrator

bp = Blueprint("firewall", __name__)


def _optional_int(value):
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@bp.post("/check")
@jwt_required()
def firewall_check() -> Response:
    """Поставить проверку IP на хосте в очередь (или dry run при ``develop``)."""
    payload = request.get_json(silent=True) or {}
    host_id = _optional_int(payload.get("host_id"))
    if host_id is None:
        return jsonify({"error": "invalid_request", "message": "host_id is required"}), 400

    develop = payload.get("develop")
    develop = str(develop) if develop not in (None, "", False) else None
    result = CheckOrchestrator().run(
        payload.get("ip"),
        _optional_int(get_jwt_identity()),
        host_id,
        copy_user_id=_optional_int(payload.get("copy_user_id")),
        develop=develop,
    )
    return jsonify(result), 200 if develop is not None else 202
