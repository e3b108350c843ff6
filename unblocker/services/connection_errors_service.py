"""Обработка терминальных ошибок проверки.

Пользователь получает только общее сообщение; администратор получает
диагностику (тип исключения, файл/строка, вероятная причина), если ошибка
уровня соединения или хост в списке критичных.
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from ..config import UnblockSettings, unblock_settings
from ..exceptions import (
    GENERIC_USER_MESSAGE,
    ConnectionFailedError,
    KeyProvisioningError,
    SshAuthenticationError,
)
from ..models import _utcnow
from . import notifications_service

logger = logging.getLogger(__name__)

CRITICAL_PATTERNS = (
    "proc_open",
    "error in libcrypto",
    "Permission denied (publickey)",
    "Connection refused",
    "Connection timed out",
    "Host key verification failed",
)

# (substring, likely cause, suggested action); first match wins
_MESSAGE_HINTS = (
    ("error in libcrypto", "SSH key format issue (line endings or corruption)", "Verify SSH key format and line endings"),
    ("Permission denied (publickey)", "SSH key authentication failed", "Verify SSH key is correctly installed on remote server"),
    ("Connection refused", "SSH service not running or port blocked", "Check SSH service status and firewall rules"),
    ("timed out", "Host unreachable or SSH port filtered", "Check network route to the host and the SSH port"),
    ("Host key verification failed", "Host key changed", "Verify the host identity and update known host keys"),
)


def is_critical_error(exc: BaseException) -> bool:
    message = str(exc)
    return any(pattern in message for pattern in CRITICAL_PATTERNS)


def _root_cause(exc: BaseException) -> BaseException:
    """Deepest raised exception in the ``__cause__`` chain."""
    seen = {id(exc)}
    source = exc
    while source.__cause__ is not None and source.__cause__.__traceback__ is not None:
        if id(source.__cause__) in seen:
            break
        source = source.__cause__
        seen.add(id(source))
    return source


def _origin(exc: BaseException) -> Dict[str, Any]:
    # Retry exhaustion re-raises a copy; the location comes from the original failure.
    source = _root_cause(exc)
    frames = traceback.extract_tb(source.__traceback__) if source.__traceback__ else []
    if not frames:
        return {"file": None, "line": None}
    last = frames[-1]
    return {"file": last.filename, "line": last.lineno}


def diagnostic_info(exc: BaseException) -> Dict[str, Any]:
    """Admin-only diagnostics for ``exc``."""
    info: Dict[str, Any] = {
        "error_type": type(exc).__name__,
        "error_message": str(exc),
        "timestamp": _utcnow().isoformat(),
    }
    info.update(_origin(exc))

    if isinstance(exc, SshAuthenticationError):
        info["likely_cause"] = "SSH key authentication failed"
        info["suggested_action"] = "Verify SSH key is correctly installed on remote server"
    elif isinstance(exc, KeyProvisioningError):
        info["likely_cause"] = "Temporary key could not be generated or installed"
        info["suggested_action"] = "Check the host management key and the local keys directory"
    else:
        message = str(exc)
        for needle, cause, action in _MESSAGE_HINTS:
            if needle in message:
                info["likely_cause"] = cause
                info["suggested_action"] = action
                break
        else:
            if isinstance(exc, ConnectionFailedError):
                info["likely_cause"] = "Network unreachable or SSH handshake failed"
                info["suggested_action"] = "Check host availability and SSH daemon logs"

    if isinstance(exc, ConnectionFailedError):
        info["attempts"] = exc.attempts
    return info


class FirewallConnectionErrorService:
    def __init__(self, settings: Optional[UnblockSettings] = None) -> None:
        self.settings = settings or unblock_settings()

    def should_alert_admin(self, host, exc: BaseException) -> bool:
        critical_host = self.settings.is_critical_host(getattr(host, "fqdn", None))
        if critical_host or is_critical_error(exc):
            if self.settings.notify_critical_errors:
                return True
        if isinstance(exc, ConnectionFailedError):
            return self.settings.notify_connection_failures
        return False

    def handle_failure(self, ip: str, host, user, exc: BaseException) -> Dict[str, bool]:
        """Log, alert the admin when warranted, tell the user a generic message."""
        diagnostics = diagnostic_info(exc)
        host_info = host.to_safe_log_dict() if host is not None else {}
        logger.error(
            "SSH Connection Error - Firewall Check Failed",
            extra={"ip": ip, **host_info, "user_id": getattr(user, "id", None), **diagnostics},
        )

        outcome = {"admin_notified": False, "user_notified": False}
        if self.should_alert_admin(host, exc):
            outcome["admin_notified"] = notifications_service.notify_admin(
                "admin_connection_error",
                {
                    "ip": ip,
                    "host": getattr(host, "fqdn", None),
                    "port": getattr(host, "port_ssh", None),
                    "user_email": getattr(user, "email", None),
                    "critical": self.settings.is_critical_host(getattr(host, "fqdn", None)) or is_critical_error(exc),
                    "diagnostics": diagnostics,
                },
            )

        if user is not None and user.email:
            outcome["user_notified"] = notifications_service.notify(
                "user_system_error",
                user.email,
                {"ip": ip, "host": getattr(host, "fqdn", None), "message": GENERIC_USER_MESSAGE},
            )
        return outcome
