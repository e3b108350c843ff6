"""Временный whitelist IP на HQ-хосте.

Каждая проверка firewall ставит эту задачу рядом с основной. На HQ
смотрим только журнал ModSecurity: если IP там есть, добавляем его в
whitelist CSF на ``hq_whitelist_ttl`` секунд и пишем администратору.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

from sqlalchemy import func

from ..audit.logger import log_action
from ..config import UnblockSettings, unblock_settings
from ..exceptions import FirewallError
from ..extensions import db
from ..firewall.commands import build_command, plan_for
from ..helpers import validate_ip
from ..models import Host, User
from ..ssh.keys import SshKeyManager, default_key_manager
from ..ssh.session import SshSession
from . import notifications_service

logger = logging.getLogger(__name__)


def _mod_security_command(host: Host) -> str:
    for stage in plan_for(host.panel_type):
        if stage.service == "mod_security":
            return stage.command
    return "mod_security_da"


class HqWhitelistService:
    def __init__(
        self,
        settings: Optional[UnblockSettings] = None,
        *,
        key_manager: Optional[SshKeyManager] = None,
        session_factory: Callable[..., SshSession] = SshSession,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self.settings = settings or unblock_settings()
        self._key_manager = key_manager
        self.session_factory = session_factory
        self.sleep = sleep

    @property
    def key_manager(self) -> SshKeyManager:
        if self._key_manager is None:
            self._key_manager = default_key_manager(self.settings)
        return self._key_manager

    def resolve_host(self) -> Optional[Host]:
        """HQ host by configured id, else by fqdn."""
        if self.settings.hq_host_id is not None:
            host = db.session.get(Host, self.settings.hq_host_id)
            if host is not None:
                return host
        if self.settings.hq_fqdn:
            return Host.query.filter(func.lower(Host.fqdn) == self.settings.hq_fqdn).first()
        return None

    def process(self, ip: Any, user_id: Optional[int] = None) -> Dict[str, Any]:
        ip = validate_ip(ip)
        host = self.resolve_host()
        if host is None:
            logger.warning("HQ host not found, skipping HQ whitelist check", extra={"ip": ip})
            return {"success": True, "skipped": True, "reason": "hq_host_not_found"}
        if not host.has_keys:
            logger.warning("HQ host has no management key, skipping HQ whitelist check", extra=host.to_safe_log_dict())
            return {"success": True, "skipped": True, "reason": "hq_host_without_keys"}

        ttl = self.settings.hq_whitelist_ttl
        try:
            with self.key_manager.credential_scope(host) as credential, self.session_factory(
                host, key_filename=credential.private_key_path, timeout=self.settings.ssh_timeout
            ) as session:
                session.connect_with_retry(self.settings.max_retry_attempts, self.settings.retry_delay, sleep=self.sleep)
                modsec_logs = session.execute(build_command(_mod_security_command(host), ip))
                if not modsec_logs:
                    logger.info("IP not blocked on HQ host", extra={"ip": ip, "host_fqdn": host.fqdn})
                    return {"success": True, "whitelisted": False, "host": host.fqdn}
                session.execute(build_command("whitelist", ip, ttl=ttl), tolerant=False)
        except FirewallError as exc:
            logger.error("Failed to process HQ whitelist", extra={"ip": ip, **host.to_safe_log_dict(), "error": str(exc)})
            raise

        user = db.session.get(User, user_id) if user_id is not None else None
        requested_by = user.email if user is not None else "unknown"
        notifications_service.notify_admin(
            "admin_hq_whitelist",
            {"ip": ip, "host": host.fqdn, "ttl": ttl, "requested_by": requested_by, "modsec_logs": modsec_logs},
        )
        log_action("hq_whitelist", {"ip": ip, "host_id": host.id, "ttl": ttl}, actor=requested_by)
        logger.info("HQ whitelist applied", extra={"ip": ip, "host_fqdn": host.fqdn, "ttl": ttl})
        return {"success": True, "whitelisted": True, "host": host.fqdn, "ttl": ttl}
