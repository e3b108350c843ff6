"""Throttling of anonymous unblock requests across five vectors."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ..events import RATE_LIMIT_EXCEEDED, publish
from ..exceptions import RateLimitExceeded
from ..helpers import subnet_of
from ..models import hash_email
from ..security.rate_limit import CounterStore, LimitInfo, check_rate_limit

logger = logging.getLogger(__name__)

MINUTE = 60
HOUR = 3600


@dataclass(frozen=True)
class GuardLimits:
    ip_per_minute: int = 3
    email_per_hour: int = 5
    domain_per_hour: int = 10
    subnet_per_hour: int = 20
    global_per_hour: int = 500

    @classmethod
    def from_config(cls, cfg) -> "GuardLimits":
        return cls(
            ip_per_minute=int(cfg.get("SIMPLE_MODE_THROTTLE_PER_MINUTE", 3)),
            email_per_hour=int(cfg.get("SIMPLE_MODE_THROTTLE_EMAIL_PER_HOUR", 5)),
            domain_per_hour=int(cfg.get("SIMPLE_MODE_THROTTLE_DOMAIN_PER_HOUR", 10)),
            subnet_per_hour=int(cfg.get("SIMPLE_MODE_THROTTLE_SUBNET_PER_HOUR", 20)),
            global_per_hour=int(cfg.get("SIMPLE_MODE_THROTTLE_GLOBAL_PER_HOUR", 500)),
        )


class AbuseGuard:
    def __init__(self, limits: Optional[GuardLimits] = None, store: Optional[CounterStore] = None) -> None:
        self.limits = limits or GuardLimits()
        self.store = store

    def _vectors(self, client_ip: str, email: str, domain: str) -> List[Tuple[str, Optional[str], int, int]]:
        return [
            ("ip", client_ip or None, self.limits.ip_per_minute, MINUTE),
            ("email", hash_email(email) if email else None, self.limits.email_per_hour, HOUR),
            ("domain", domain or None, self.limits.domain_per_hour, HOUR),
            ("subnet", subnet_of(client_ip) if client_ip else None, self.limits.subnet_per_hour, HOUR),
            ("global", "all", self.limits.global_per_hour, HOUR),
        ]

    def check(self, client_ip: str, email: str, domain: str) -> Dict[str, LimitInfo]:
        """Count this request on every vector; raise on the first one over its limit."""
        results: Dict[str, LimitInfo] = {}
        violations: List[Tuple[str, str, LimitInfo]] = []
        for vector, identifier, limit, window in self._vectors(client_ip, email, domain):
            if not identifier:
                continue
            ok, info = check_rate_limit(f"simple_{vector}", identifier, limit, window, store=self.store)
            results[vector] = info
            if not ok:
                violations.append((vector, identifier, info))

        if violations:
            vector, identifier, info = violations[0]
            logger.warning(
                "Simple unblock rate limit exceeded",
                extra={"vector": vector, "attempts": info.count, "max_attempts": info.limit},
            )
            publish(
                RATE_LIMIT_EXCEEDED,
                {
                    "vector": vector,
                    "identifier": identifier,
                    "attempts": info.count,
                    "max_attempts": info.limit,
                    "ip": client_ip,
                    "domain": domain,
                },
            )
            raise RateLimitExceeded(vector, identifier, info.count, info.limit, info.reset_in)
        return results
