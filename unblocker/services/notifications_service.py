"""Уведомления: шаблоны писем и их доставка.

Ядро передаёт только ключ шаблона, получателя и данные; текст письма
собирается здесь. Отправитель по умолчанию - :class:`MailNotificationSender`
(SMTP через ReportMailer). Тесты и другие каналы подменяют его через
``app.extensions["unblocker_notifier"]``.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from flask import current_app

from ..config import unblock_settings
from ..extensions import db
from ..models import Report, User
from ..reports.email_sender import ReportMailer

logger = logging.getLogger(__name__)

NOTIFIER_EXTENSION = "unblocker_notifier"


class NotificationSender(Protocol):
    def send(self, template: str, recipient: str, data: Dict[str, Any]) -> bool: ...


# ---------------------------------------------------------------------------
# Шаблоны
# ---------------------------------------------------------------------------


def _report_link(report_id: Any) -> str:
    base = (current_app.config.get("REPORT_BASE_URL") or "").rstrip("/")
    return f"{base}/report/{report_id}" if base else f"/report/{report_id}"


def _outcome_line(data: Dict[str, Any]) -> str:
    analysis = data.get("analysis") or {}
    if analysis.get("error"):
        return "The check could not be completed."
    if analysis.get("unblock_performed") and analysis.get("unblock_status") == "success":
        return f"IP {data.get('ip')} was blocked and has been unblocked."
    if analysis.get("was_blocked"):
        return f"IP {data.get('ip')} is blocked; automatic unblock did not complete."
    return f"IP {data.get('ip')} is not blocked on {data.get('host')}."


def _report_user(data: Dict[str, Any]) -> Tuple[str, str]:
    subject = f"Firewall check for {data.get('ip')} on {data.get('host')}"
    body = "\n".join(
        [
            _outcome_line(data),
            "",
            f"Full report: {_report_link(data.get('report_id'))}",
        ]
    )
    return subject, body


def _report_admin(data: Dict[str, Any]) -> Tuple[str, str]:
    subject = f"[admin] Firewall check for {data.get('ip')} on {data.get('host')}"
    analysis = data.get("analysis") or {}
    body = "\n".join(
        [
            _outcome_line(data),
            f"Requested by: {data.get('requested_by', 'unknown')}",
            f"Block sources: {', '.join(analysis.get('block_sources') or []) or '-'}",
            "",
            "Analysis:",
            json.dumps(analysis, indent=2, ensure_ascii=False, default=str),
            "",
            f"Full report: {_report_link(data.get('report_id'))}",
        ]
    )
    return subject, body


def _report_copy(data: Dict[str, Any]) -> Tuple[str, str]:
    subject, body = _report_user(data)
    return f"[copy] {subject}", f"Requested by: {data.get('requested_by', 'unknown')}\n\n{body}"


def _user_system_error(data: Dict[str, Any]) -> Tuple[str, str]:
    subject = "Firewall check could not be completed"
    body = (
        f"We could not complete the firewall check for {data.get('ip')}.\n"
        f"{data.get('message')}\n"
    )
    return subject, body


def _admin_connection_error(data: Dict[str, Any]) -> Tuple[str, str]:
    prefix = "[CRITICAL] " if data.get("critical") else ""
    subject = f"{prefix}SSH connection error on {data.get('host')}"
    diagnostics = data.get("diagnostics") or {}
    lines = [
        f"Host: {data.get('host')} (port {data.get('port')})",
        f"IP checked: {data.get('ip')}",
        f"Requested by: {data.get('user_email')}",
        f"Error type: {diagnostics.get('error_type')}",
        f"Error: {diagnostics.get('error_message')}",
        f"Location: {diagnostics.get('file')}:{diagnostics.get('line')}",
        f"Likely cause: {diagnostics.get('likely_cause', 'unknown')}",
        f"Suggested action: {diagnostics.get('suggested_action', '-')}",
        f"Time: {diagnostics.get('timestamp')}",
    ]
    return subject, "\n".join(lines)


def _admin_parse_error(data: Dict[str, Any]) -> Tuple[str, str]:
    subject = "Firewall log line could not be parsed completely"
    body = "\n".join(
        [
            f"Host: {data.get('host', '-')}",
            f"IP: {data.get('ip') or '-'}",
            f"Date: {data.get('date') or '-'}",
            "Raw lines:",
            str(data.get("raw", "")),
        ]
    )
    return subject, body


def _simple_unblock_result(data: Dict[str, Any]) -> Tuple[str, str]:
    subject = f"Unblock request for {data.get('domain')}"
    if data.get("unblocked"):
        text = f"IP {data.get('ip')} has been unblocked for {data.get('domain')}."
    elif data.get("was_blocked"):
        text = f"IP {data.get('ip')} is blocked but could not be unblocked automatically. Support has been notified."
    else:
        text = f"IP {data.get('ip')} is not blocked on the server hosting {data.get('domain')}."
    return subject, text + "\n"


def _simple_unblock_admin(data: Dict[str, Any]) -> Tuple[str, str]:
    subject = f"[admin] Simple unblock: {data.get('ip')} / {data.get('domain')}"
    body = "\n".join(
        [
            f"Domain: {data.get('domain')}",
            f"IP: {data.get('ip')}",
            f"Host: {data.get('host', '-')}",
            f"Decision: {data.get('reason')}",
            f"Unblocked: {bool(data.get('unblocked'))}",
            f"Report: {_report_link(data.get('report_id'))}" if data.get("report_id") else "Report: -",
        ]
    )
    return subject, body


def _simple_unblock_otp(data: Dict[str, Any]) -> Tuple[str, str]:
    subject = "Your verification code"
    body = (
        f"Your code to unblock {data.get('ip')} for {data.get('domain')}: {data.get('code')}\n"
        f"It expires in {data.get('expires_minutes')} minutes.\n"
    )
    return subject, body


def _admin_simple_unblock_alert(data: Dict[str, Any]) -> Tuple[str, str]:
    subject = f"[admin] Simple unblock alert: {data.get('reason')}"
    body = "\n".join(f"{key}: {value}" for key, value in sorted(data.items()))
    return subject, body


def _admin_hq_whitelist(data: Dict[str, Any]) -> Tuple[str, str]:
    ttl = int(data.get("ttl") or 0)
    subject = f"[admin] {data.get('ip')} temporarily whitelisted on HQ {data.get('host')}"
    body = "\n".join(
        [
            f"IP {data.get('ip')} was blocked by ModSecurity on {data.get('host')}.",
            f"It is whitelisted for {ttl} seconds ({round(ttl / 3600, 2)} h).",
            f"Requested by: {data.get('requested_by', 'unknown')}",
            "",
            "ModSecurity log:",
            str(data.get("modsec_logs", "")),
        ]
    )
    return subject, body


TEMPLATES: Dict[str, Callable[[Dict[str, Any]], Tuple[str, str]]] = {
    "report_user": _report_user,
    "report_admin": _report_admin,
    "report_copy": _report_copy,
    "user_system_error": _user_system_error,
    "admin_connection_error": _admin_connection_error,
    "admin_parse_error": _admin_parse_error,
    "simple_unblock_result": _simple_unblock_result,
    "simple_unblock_admin": _simple_unblock_admin,
    "simple_unblock_otp": _simple_unblock_otp,
    "admin_simple_unblock_alert": _admin_simple_unblock_alert,
    "admin_hq_whitelist": _admin_hq_whitelist,
}


def render(template: str, data: Dict[str, Any]) -> Tuple[str, str]:
    try:
        renderer = TEMPLATES[template]
    except KeyError:
        raise ValueError(f"Unknown notification template: {template}") from None
    return renderer(data)


# ---------------------------------------------------------------------------
# Отправка
# ---------------------------------------------------------------------------


class MailNotificationSender:
    def __init__(self, mailer: Optional[ReportMailer] = None) -> None:
        self.mailer = mailer or ReportMailer()

    def send(self, template: str, recipient: str, data: Dict[str, Any]) -> bool:
        subject, body = render(template, data)
        return self.mailer.send([recipient], subject, body)


def get_sender() -> NotificationSender:
    sender = current_app.extensions.get(NOTIFIER_EXTENSION)
    return sender if sender is not None else MailNotificationSender()


def notify(template: str, recipient: Optional[str], data: Dict[str, Any]) -> bool:
    """Send one notification; a missing recipient is logged and skipped."""
    if not recipient:
        logger.warning("Notification skipped: no recipient", extra={"template": template})
        return False
    ok = bool(get_sender().send(template, recipient, data))
    if not ok:
        logger.warning("Notification not delivered", extra={"template": template, "recipient": recipient})
    return ok


def admin_email() -> Optional[str]:
    """Configured admin address, else the first admin user."""
    configured = unblock_settings().admin_email
    if configured:
        return configured
    admin = User.query.filter_by(is_admin=True).order_by(User.id.asc()).first()
    return admin.email if admin else None


def notify_admin(template: str, data: Dict[str, Any]) -> bool:
    return notify(template, admin_email(), data)


def parse_error_notifier(host=None) -> Callable[[Any], bool]:
    """Callback for the output parser: mail the raw candidate lines to the admin."""
    host_label = getattr(host, "fqdn", None) or "-"

    def _notify(signal) -> bool:
        return notify_admin(
            "admin_parse_error",
            {"host": host_label, "ip": signal.ip, "date": signal.date, "raw": signal.raw},
        )

    return _notify


def _report_data(report: Report) -> Dict[str, Any]:
    return {
        "report_id": report.id,
        "ip": report.ip,
        "host": report.host.fqdn if report.host else "Unknown",
        "analysis": report.analysis or {},
        "requested_by": report.user.email if report.user else "Unknown user",
    }


def send_report_notifications(report_id: str, copy_user_id: Optional[int] = None) -> List[str]:
    """Mail a finished report: requesting user, admin, optional copy user.

    Each address receives at most one email. Returns the recipients.
    """
    report = db.session.get(Report, report_id)
    if report is None:
        logger.warning("Report not found for notification", extra={"report_id": report_id})
        return []

    data = _report_data(report)
    sent: List[str] = []

    if report.user and report.user.email:
        notify("report_user", report.user.email, data)
        sent.append(report.user.email)
    else:
        logger.warning("Cannot send user notification: user or email not found", extra={"report_id": report_id})

    admin = admin_email()
    if admin and admin not in sent:
        notify("report_admin", admin, data)
        sent.append(admin)

    if copy_user_id:
        copy_user = db.session.get(User, copy_user_id)
        if copy_user is None or not copy_user.email:
            logger.warning("Copy user not found", extra={"copy_user_id": copy_user_id})
        elif copy_user.email not in sent:
            notify("report_copy", copy_user.email, data)
            sent.append(copy_user.email)

    logger.info("Report notifications sent", extra={"report_id": report_id, "recipients": len(sent)})
    return sent
