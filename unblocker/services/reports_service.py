"""Создание и чтение отчётов о проверках."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from ..config import unblock_settings
from ..exceptions import ModelNotFoundError, ReportExpiredError
from ..extensions import db
from ..firewall.analysis import FirewallAnalysisResult
from ..firewall.unblock import UnblockResult
from ..models import Report, User, _utcnow

logger = logging.getLogger(__name__)


def build_analysis(result: FirewallAnalysisResult, unblock: Optional[UnblockResult] = None) -> Dict[str, Any]:
    """Analysis payload stored on the report."""
    analysis = result.analysis()
    performed = bool(unblock and unblock.performed)
    analysis["unblock_performed"] = performed
    if not performed:
        analysis["unblock_status"] = "not_required"
    else:
        analysis["unblock_status"] = "success" if unblock.success else "failed"
    if unblock is not None:
        analysis["unblock"] = unblock.to_dict()
    return analysis


def create_report(user_id: int, host_id: int, ip: str, logs: Dict[str, Any], analysis: Dict[str, Any]) -> Report:
    report = Report(user_id=user_id, host_id=host_id, ip=ip, logs=logs or {}, analysis=analysis or {})
    db.session.add(report)
    db.session.commit()
    logger.info("Report created", extra={"report_id": report.id, "user_id": user_id, "host_id": host_id, "ip": ip})
    return report


def create_error_report(user_id: int, host_id: int, ip: str, exc: BaseException) -> Report:
    """Report for a check that ended with an error, kept for tracking."""
    analysis = {
        "was_blocked": False,
        "error": str(exc),
        "error_type": type(exc).__name__,
        "created_at": _utcnow().isoformat(),
    }
    return create_report(user_id, host_id, ip, {}, analysis)


def get_readable_report(report_id: str, now: Optional[datetime] = None) -> Report:
    """Load a report for reading; raises 404 / 403 errors, stamps ``last_read``."""
    report = db.session.get(Report, report_id)
    if report is None:
        raise ModelNotFoundError("Report", report_id)
    if report.is_expired(unblock_settings().report_expiration, now=now):
        raise ReportExpiredError(f"Report {report_id} expired", context={"report_id": report_id})
    report.last_read = _utcnow()
    db.session.commit()
    return report


def anonymous_user() -> User:
    """System user that owns reports created by the anonymous flow."""
    email = unblock_settings().anonymous_user_email
    user = User.query.filter_by(email=email).first()
    if user is None:
        user = User(email=email, first_name="Anonymous", last_name="System", is_admin=False, is_active=True)
        db.session.add(user)
        db.session.commit()
    return user
