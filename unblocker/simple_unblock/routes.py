# -*- coding: utf-8 -*-
"""Анонимная разблокировка: запрос кода и его подтверждение.

Обе точки отвечают 404, если simple mode выключен. Нарушение лимитов
возвращает 429 с информацией о векторе и временем ожидания.
"""

from __future__ import annotations

import logging

from flask import Blueprint, Response, abort, current_app, jsonify, request

from ..helpers import client_ip
from .service import SimpleUnblockService

bp = Blueprint("simple_unblock", __name__)
logger = logging.getLogger(__name__)


@bp.before_request
def _require_simple_mode():
    if not current_app.config.get("SIMPLE_MODE_ENABLED"):
        abort(404)


@bp.post("/request")
def request_code() -> Response:
    payload = request.get_json(silent=True) or {}
    ip = payload.get("ip")
    domain = payload.get("domain")
    email = payload.get("email")
    service = SimpleUnblockService()

    if (payload.get("website") or "").strip():
        service.honeypot(ip, domain, email, client_ip(request))
        return jsonify({"success": True, "message": "Verification code sent"}), 200

    token, info = service.start(ip, domain, email, client_ip(request))
    return jsonify({"success": True, "message": "Verification code sent", "token": token, **info}), 200


@bp.post("/verify")
def verify_code() -> Response:
    payload = request.get_json(silent=True) or {}
    token = (payload.get("token") or "").strip()
    code = str(payload.get("code") or "").strip()
    if not token or not code:
        return jsonify({"error": "invalid_request", "message": "token and code are required"}), 400

    result = SimpleUnblockService().verify(token, code, client_ip(request))
    return jsonify(result), 202
