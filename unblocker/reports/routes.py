# -*- coding: utf-8 -*-
"""Публичная страница отчёта (ссылка из письма)."""

from __future__ import annotations

from flask import Blueprint, Response, jsonify

from ..services.reports_service import get_readable_report

bp = Blueprint("reports", __name__)


@bp.get("/report/<report_id>")
def show_report(report_id: str) -> Response:
    # 404 для неизвестного, 403 для просроченного: через обработчик FirewallError
    report = get_readable_report(report_id)
    return jsonify(report.to_dict()), 200
