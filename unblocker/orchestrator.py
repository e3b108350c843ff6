"""Firewall check orchestration.

``run`` is the synchronous entry point: it validates, authorizes and queues.
``execute_check`` is the body of the background job: provision a temporary
key, connect, analyze, unblock when needed, persist the report and fan out
notifications. Validation and authorization always happen before any SSH
object is created.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from .audit.logger import log_action
from .config import UnblockSettings, unblock_settings
from .events import FIREWALL_CHECK_COMPLETED, publish
from .exceptions import (
    AccessDeniedError,
    ConnectionFailedError,
    FirewallError,
    ModelNotFoundError,
)
from .extensions import db
from .firewall.analysis import FirewallAnalysisEngine
from .firewall.parser import CommandOutputParser
from .firewall.unblock import UnblockExecutor
from .helpers import validate_ip
from .models import Host, User
from .services import bfm_whitelist_service, notifications_service
from .services.access_service import has_access_to_host
from .services.connection_errors_service import FirewallConnectionErrorService
from .services.reports_service import build_analysis, create_error_report, create_report
from .ssh.keys import SshKeyManager, default_key_manager
from .ssh.session import SshSession

logger = logging.getLogger(__name__)


def _dispatch_check(ip: str, user_id: int, host_id: int, copy_user_id: Optional[int]) -> Any:
    from .tasks.firewall_checks import process_firewall_check

    return process_firewall_check.delay(ip, user_id, host_id, copy_user_id)


def _dispatch_report_notification(report_id: str, copy_user_id: Optional[int]) -> Any:
    from .tasks.firewall_checks import send_report_notification

    return send_report_notification.delay(report_id, copy_user_id)


def _dispatch_hq_whitelist(ip: str, user_id: int) -> Any:
    from .tasks.firewall_checks import process_hq_whitelist

    return process_hq_whitelist.delay(ip, user_id)


class CheckOrchestrator:
    def __init__(
        self,
        settings: Optional[UnblockSettings] = None,
        *,
        key_manager: Optional[SshKeyManager] = None,
        session_factory: Callable[..., SshSession] = SshSession,
        executor: Optional[UnblockExecutor] = None,
        dispatch_check: Callable[..., Any] = _dispatch_check,
        dispatch_notification: Callable[..., Any] = _dispatch_report_notification,
        dispatch_hq_whitelist: Callable[..., Any] = _dispatch_hq_whitelist,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self.settings = settings or unblock_settings()
        self._key_manager = key_manager
        self.session_factory = session_factory
        self.executor = executor or UnblockExecutor(whitelist_ttl=self.settings.whitelist_ttl)
        self.dispatch_check = dispatch_check
        self.dispatch_notification = dispatch_notification
        self.dispatch_hq_whitelist = dispatch_hq_whitelist
        self.sleep = sleep

    @property
    def key_manager(self) -> SshKeyManager:
        if self._key_manager is None:
            self._key_manager = default_key_manager(self.settings)
        return self._key_manager

    # -- synchronous entry point -------------------------------------------

    def authorize(self, ip: Any, user_id: Any, host_id: Any) -> Tuple[str, User, Host]:
        """Validate the IP, load user and host, check access. No remote I/O."""
        ip = validate_ip(ip)
        user = db.session.get(User, user_id) if user_id is not None else None
        if user is None:
            raise ModelNotFoundError("User", user_id)
        host = db.session.get(Host, host_id) if host_id is not None else None
        if host is None:
            raise ModelNotFoundError("Host", host_id)
        if not has_access_to_host(user, host.id):
            logger.warning("Access denied to host", extra={"user_id": user.id, "host_id": host.id})
            raise AccessDeniedError(user.id, host.id)
        return ip, user, host

    def run(
        self,
        ip: Any,
        user_id: Any,
        host_id: Any,
        copy_user_id: Optional[int] = None,
        develop: Optional[str] = None,
    ) -> Dict[str, Any]:
        ip, user, host = self.authorize(ip, user_id, host_id)

        if develop is not None:
            logger.info("Develop mode: firewall check skipped", extra={"ip": ip, "host_id": host.id})
            return {
                "success": True,
                "message": "Develop mode: no SSH commands executed",
                "data": {"develop_command": develop, "ip": ip, "host_id": host.id},
            }

        async_result = self.dispatch_check(ip, user.id, host.id, copy_user_id)
        if self.settings.hq_configured:
            self.dispatch_hq_whitelist(ip, user.id)
        logger.info("Firewall check queued", extra={"ip": ip, "user_id": user.id, "host_id": host.id})
        return {
            "success": True,
            "message": "Firewall check queued",
            "data": {"task_id": getattr(async_result, "id", None), "ip": ip, "host_id": host.id},
        }

    # -- background job body -----------------------------------------------

    def open_session(self, host: Host, credential) -> SshSession:
        return self.session_factory(host, key_filename=credential.private_key_path, timeout=self.settings.ssh_timeout)

    def execute_check(
        self,
        ip: Any,
        user_id: Any,
        host_id: Any,
        copy_user_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        # The queued path re-checks access: grants may change while the job waits.
        ip, user, host = self.authorize(ip, user_id, host_id)
        log_ctx = {"ip": ip, "user_id": user.id, **host.to_safe_log_dict()}
        logger.info("Firewall check started", extra=log_ctx)

        try:
            with self.key_manager.credential_scope(host) as credential, self.open_session(host, credential) as session:
                session.connect_with_retry(self.settings.max_retry_attempts, self.settings.retry_delay, sleep=self.sleep)
                engine = FirewallAnalysisEngine(CommandOutputParser(on_ambiguity=notifications_service.parse_error_notifier(host)))
                result = engine.analyze(session, host, ip)
                unblock = None
                if result.was_blocked:
                    unblock = self.executor.remove(session, host, ip, result, whitelist_ttl=self.settings.whitelist_ttl)
                retry_log = list(session.retry_log)
        except ConnectionFailedError as exc:
            self._fail(ip, user, host, exc)
            raise
        except FirewallError as exc:
            report = self._fail(ip, user, host, exc)
            return {"success": False, "message": exc.public_message, "report_id": report.id if report else None}

        bfm_whitelist_service.record_from_unblock(host, ip, unblock, notes="Added after BFM blacklist removal")
        analysis = build_analysis(result, unblock)
        if retry_log:
            analysis["connection_retries"] = retry_log
        logs = result.logs
        if unblock is not None and unblock.output:
            logs["unblock"] = unblock.output
        report = create_report(user.id, host.id, ip, logs, analysis)

        log_action(
            "firewall_check",
            {
                "report_id": report.id,
                "ip": ip,
                "host_id": host.id,
                "was_blocked": result.was_blocked,
                "unblock_status": analysis["unblock_status"],
            },
            actor=user.email,
        )
        self.dispatch_notification(report.id, copy_user_id)
        publish(
            FIREWALL_CHECK_COMPLETED,
            {
                "report_id": report.id,
                "ip": ip,
                "host_id": host.id,
                "user_id": user.id,
                "was_blocked": result.was_blocked,
                "unblock_status": analysis["unblock_status"],
            },
        )

        success = unblock is None or unblock.success
        logger.info("Firewall check finished", extra={**log_ctx, "report_id": report.id, "success": success})
        return {
            "success": success,
            "message": unblock.message if unblock is not None else "IP is not blocked",
            "report_id": report.id,
            "data": {
                "was_blocked": result.was_blocked,
                "block_sources": result.block_sources,
                "unblock_status": analysis["unblock_status"],
            },
        }

    def _fail(self, ip: str, user: User, host: Host, exc: FirewallError):
        report = None
        try:
            report = create_error_report(user.id, host.id, ip, exc)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Could not persist error report", extra={"ip": ip, "host_id": host.id})
        log_action(
            "firewall_check_failed",
            {"ip": ip, "host_id": host.id, "error": exc.error_code, "report_id": report.id if report else None},
            actor=user.email,
        )
        FirewallConnectionErrorService(self.settings).handle_failure(ip, host, user, exc)
        return report
