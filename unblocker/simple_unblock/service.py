"""Anonymous unblock: request intake and the background job body.

Intake (``start``) throttles and mails a code; after the code is verified,
``request`` maps the domain to its server and queues the job. The job
(``SimpleUnblockProcessor.process``) analyzes the host, decides, unblocks,
stores a report under the anonymous system user and mails the result.
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from flask import current_app

from ..audit.logger import log_action
from ..config import UnblockSettings, unblock_settings
from ..events import HONEYPOT_TRIGGERED, REQUEST_PROCESSED, publish
from ..exceptions import CommandExecutionError, FirewallError, RateLimitExceeded, SimpleModeError
from ..extensions import db
from ..firewall.analysis import FirewallAnalysisEngine, FirewallAnalysisResult
from ..firewall.commands import build_command, log_search_plan_for
from ..firewall.parser import CommandOutputParser
from ..firewall.unblock import UnblockExecutor, UnblockResult
from ..helpers import normalize_domain, validate_ip
from ..models import Host, Hosting, _utcnow
from ..security.rate_limit import CounterStore, check_rate_limit, get_counter_store
from ..services import bfm_whitelist_service, notifications_service
from ..services.reports_service import anonymous_user, build_analysis, create_report
from ..ssh.keys import SshKeyManager, default_key_manager
from ..ssh.session import SshSession
from .guard import HOUR, AbuseGuard, GuardLimits
from .otp import OtpService

logger = logging.getLogger(__name__)

DEDUPE_TTL = 600
LOG_EXCERPT_LIMIT = 500


def dedupe_key(ip: str, domain: str) -> str:
    return f"simple_unblock_processed:{ip}:{domain}"


@dataclass(frozen=True)
class UnblockDecision:
    should_unblock: bool
    reason: str


def evaluate_unblock_match(ip_blocked: bool, domain_in_logs: bool, domain_valid: bool) -> UnblockDecision:
    if not domain_valid:
        return UnblockDecision(False, "domain_not_valid_in_database")
    if ip_blocked and domain_in_logs:
        return UnblockDecision(True, "full_match")
    if ip_blocked:
        return UnblockDecision(True, "domain_validated_in_db")
    if domain_in_logs:
        return UnblockDecision(False, "domain_found_but_ip_not_blocked")
    return UnblockDecision(False, "no_match_found")


def find_hosting(domain: str, host_id: Optional[int] = None) -> Optional[Hosting]:
    query = Hosting.query.filter(Hosting.domain == domain, Hosting.is_suspended.is_(False))
    if host_id is not None:
        query = query.filter(Hosting.host_id == host_id)
    return query.order_by(Hosting.id.asc()).first()


def _dispatch_simple_unblock(ip: str, domain: str, email: str, host_id: int) -> Any:
    from ..tasks.simple_unblock import process_simple_unblock

    return process_simple_unblock.delay(ip, domain, email, host_id)


class SimpleUnblockService:
    def __init__(
        self,
        guard: Optional[AbuseGuard] = None,
        otp: Optional[OtpService] = None,
        dispatch: Callable[..., Any] = _dispatch_simple_unblock,
    ) -> None:
        cfg = current_app.config
        self.enabled = bool(cfg.get("SIMPLE_MODE_ENABLED"))
        self.guard = guard or AbuseGuard(GuardLimits.from_config(cfg))
        self.otp = otp or OtpService.from_app()
        self.max_verify_attempts = int(cfg.get("UNBLOCK_ATTEMPTS", 10))
        self.dispatch = dispatch

    def _require_enabled(self) -> None:
        if not self.enabled:
            raise SimpleModeError("Simple mode is disabled", error_code="simple_mode_disabled")

    def honeypot(self, ip: str, domain: str, email: str, client_ip: str) -> None:
        """Record a bot submission; the caller answers as if it was accepted."""
        logger.warning("Simple unblock honeypot triggered", extra={"client_ip": client_ip})
        publish(HONEYPOT_TRIGGERED, {"ip": client_ip, "email": email, "domain": domain, "target_ip": ip})

    def start(self, ip: Any, domain: Any, email: Any, client_ip: str) -> Tuple[str, Dict[str, Any]]:
        """Validate, throttle and send the verification code. Returns ``(token, info)``."""
        self._require_enabled()
        ip = validate_ip(ip)
        domain = normalize_domain(domain)
        email = str(email or "").strip().lower()
        if "@" not in email:
            raise SimpleModeError("Invalid email address", error_code="invalid_email")

        self.guard.check(client_ip, email, domain)
        token, _code = self.otp.issue(email, client_ip, domain, ip)
        return token, {"ip": ip, "domain": domain, "expires_minutes": self.otp.expires_minutes}

    def verify(self, token: str, code: str, client_ip: str) -> Dict[str, Any]:
        """Check the code and queue the job. Each token gets ``UNBLOCK_ATTEMPTS`` tries per hour."""
        self._require_enabled()
        token_id = hashlib.sha256((token or "").encode("utf-8")).hexdigest()
        ok, info = check_rate_limit("simple_verify", token_id, self.max_verify_attempts, HOUR, store=self.guard.store)
        if not ok:
            raise RateLimitExceeded("token", token_id, info.count, info.limit, info.reset_in)
        data = self.otp.verify(token, code, client_ip)
        return self.request(data["ip"], data["domain"], data["email"], client_ip)

    def request(self, ip: Any, domain: Any, email: str, client_ip: str) -> Dict[str, Any]:
        """Queue the unblock job for a verified request.

        An unknown domain gets the same answer as a known one; only the
        administrator is told.
        """
        self._require_enabled()
        ip = validate_ip(ip)
        domain = normalize_domain(domain)

        hosting = find_hosting(domain)
        if hosting is None:
            logger.warning("Simple unblock: domain not found", extra={"domain": domain, "client_ip": client_ip})
            notifications_service.notify_admin(
                "admin_simple_unblock_alert",
                {
                    "reason": "domain_not_found",
                    "domain": domain,
                    "ip": ip,
                    "client_ip": client_ip,
                    "timestamp": _utcnow().isoformat(),
                },
            )
            publish(REQUEST_PROCESSED, {"ip": client_ip, "domain": domain, "success": False})
            return {"success": True, "message": "Request received"}

        self.dispatch(ip, domain, email, hosting.host_id)
        publish(REQUEST_PROCESSED, {"ip": client_ip, "domain": domain, "success": True})
        logger.info("Simple unblock queued", extra={"domain": domain, "host_id": hosting.host_id})
        return {"success": True, "message": "Request received"}


class SimpleUnblockProcessor:
    """Body of the ``process_simple_unblock`` job."""

    def __init__(
        self,
        settings: Optional[UnblockSettings] = None,
        *,
        key_manager: Optional[SshKeyManager] = None,
        session_factory: Callable[..., SshSession] = SshSession,
        executor: Optional[UnblockExecutor] = None,
        store: Optional[CounterStore] = None,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self.settings = settings or unblock_settings()
        self.whitelist_ttl = int(current_app.config.get("SIMPLE_MODE_WHITELIST_TTL", 3600))
        self._key_manager = key_manager
        self.session_factory = session_factory
        self.executor = executor or UnblockExecutor(whitelist_ttl=self.whitelist_ttl)
        self.store = store or get_counter_store()
        self.sleep = sleep

    @property
    def key_manager(self) -> SshKeyManager:
        if self._key_manager is None:
            self._key_manager = default_key_manager(self.settings)
        return self._key_manager

    def already_processed(self, ip: str, domain: str) -> bool:
        return self.store.get(dedupe_key(ip, domain)) > 0

    def mark_processed(self, ip: str, domain: str) -> None:
        self.store.hit(dedupe_key(ip, domain), DEDUPE_TTL)

    def search_logs(self, session: SshSession, host: Host, ip: str) -> Dict[str, str]:
        """Mail log lines mentioning ``ip``; a failing search counts as not found."""
        found: Dict[str, str] = {}
        for stage in log_search_plan_for(host.panel_type):
            try:
                output = session.execute(build_command(stage.command, ip))
            except CommandExecutionError as exc:
                logger.warning("Could not check IP in logs", extra={"service": stage.service, "error": str(exc)})
                continue
            if output.strip():
                found[stage.service] = output[:LOG_EXCERPT_LIMIT]
        return found

    def process(self, ip: Any, domain: str, email: str, host_id: int) -> Dict[str, Any]:
        ip = validate_ip(ip)
        if self.already_processed(ip, domain):
            logger.info("Simple unblock already processed", extra={"ip": ip, "domain": domain, "host_id": host_id})
            return {"success": True, "skipped": True, "reason": "already_processed"}

        host = db.session.get(Host, host_id)
        if host is None:
            raise SimpleModeError(f"Host {host_id} not found", error_code="host_not_found")

        if find_hosting(domain, host.id) is None:
            decision = evaluate_unblock_match(False, False, False)
            logger.warning("Simple unblock: domain validation failed", extra={"domain": domain, **host.to_safe_log_dict()})
            notifications_service.notify_admin(
                "admin_simple_unblock_alert",
                {
                    "reason": decision.reason,
                    "domain": domain,
                    "ip": ip,
                    "host": host.fqdn,
                    "warning": "Possible abuse attempt - domain validation failed",
                },
            )
            return {"success": False, "reason": decision.reason}

        try:
            return self._run(ip, domain, email, host)
        except FirewallError as exc:
            self._fail(ip, domain, email, host, exc)
            raise

    def _run(self, ip: str, domain: str, email: str, host: Host) -> Dict[str, Any]:
        unblock: Optional[UnblockResult] = None
        with self.key_manager.credential_scope(host) as credential, self.session_factory(
            host, key_filename=credential.private_key_path, timeout=self.settings.ssh_timeout
        ) as session:
            session.connect_with_retry(self.settings.max_retry_attempts, self.settings.retry_delay, sleep=self.sleep)
            engine = FirewallAnalysisEngine(CommandOutputParser(on_ambiguity=notifications_service.parse_error_notifier(host)))
            analysis = engine.analyze(session, host, ip)
            log_hits = self.search_logs(session, host, ip)
            decision = evaluate_unblock_match(analysis.was_blocked, bool(log_hits), True)
            logger.info("Unblock decision made", extra={"decision": decision.reason, "should_unblock": decision.should_unblock})
            if decision.should_unblock:
                unblock = self.executor.remove(session, host, ip, analysis, whitelist_ttl=self.whitelist_ttl)
                self.mark_processed(ip, domain)

        bfm_whitelist_service.record_from_unblock(host, ip, unblock, notes="Added by simple unblock")
        report = self._report(ip, domain, host, analysis, unblock, decision, log_hits)
        unblocked = bool(unblock and unblock.performed and unblock.success)
        data = {
            "ip": ip,
            "domain": domain,
            "host": host.fqdn,
            "reason": decision.reason,
            "was_blocked": analysis.was_blocked,
            "unblocked": unblocked,
            "report_id": report.id,
        }
        notifications_service.notify("simple_unblock_result", email, data)
        admin = notifications_service.admin_email()
        if admin and admin != email:
            notifications_service.notify("simple_unblock_admin", admin, data)

        log_action(
            "simple_unblock_success" if decision.should_unblock else "simple_unblock_no_match",
            {"ip": ip, "domain": domain, "host_id": host.id, "report_id": report.id, "decision": decision.reason},
            actor="anonymous",
        )
        return {"success": True, "reason": decision.reason, "unblocked": unblocked, "report_id": report.id}

    def _report(
        self,
        ip: str,
        domain: str,
        host: Host,
        analysis: FirewallAnalysisResult,
        unblock: Optional[UnblockResult],
        decision: UnblockDecision,
        log_hits: Dict[str, str],
    ):
        payload = build_analysis(analysis, unblock)
        payload.update({"simple_mode": True, "domain": domain, "decision": decision.reason})
        logs = analysis.logs
        if log_hits:
            logs["log_search"] = log_hits
        return create_report(anonymous_user().id, host.id, ip, logs, payload)

    def _fail(self, ip: str, domain: str, email: str, host: Host, exc: FirewallError) -> None:
        logger.error("Simple unblock job failed", extra={"ip": ip, "domain": domain, "host_id": host.id, "error": str(exc)})
        create_report(
            anonymous_user().id,
            host.id,
            ip,
            {"error": str(exc)},
            {
                "error": True,
                "error_message": str(exc),
                "domain": domain,
                "simple_mode": True,
                "unblock_performed": False,
                "analysis_timestamp": _utcnow().isoformat(),
            },
        )
        notifications_service.notify_admin(
            "admin_simple_unblock_alert",
            {"reason": "job_failure", "domain": domain, "ip": ip, "host": host.fqdn, "error": str(exc)},
        )
