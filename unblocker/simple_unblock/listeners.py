"""Event listeners: abuse incidents and email/IP reputation.

Registration order matters: incidents (and their penalties) first, then the
reputation trackers.
"""

from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError

from ..events import (
    HONEYPOT_TRIGGERED,
    IP_MISMATCH,
    OTP_FAILED,
    OTP_SENT,
    OTP_VERIFIED,
    RATE_LIMIT_EXCEEDED,
    REQUEST_PROCESSED,
    EventBus,
)
from ..extensions import db
from ..helpers import subnet_of
from ..models import AbuseIncident, EmailReputation, IpReputation, _utcnow, hash_email

logger = logging.getLogger(__name__)

RATE_LIMIT_SEVERITY = {"subnet": "high", "global": "high", "domain": "medium", "email": "medium", "ip": "low"}
OTP_FAILURE_WINDOW = timedelta(minutes=10)
OTP_FAILURE_THRESHOLD = 3


# ---------------------------------------------------------------------------
# Reputation helpers
# ---------------------------------------------------------------------------
#
# Counters are shared by every web and worker process: increments happen in
# the UPDATE statement, never as read-modify-write on a loaded row.


def _ensure_email_row(email_hash: str, email_domain: Optional[str] = None) -> None:
    exists = db.session.execute(select(EmailReputation.id).where(EmailReputation.email_hash == email_hash)).first()
    if exists is not None:
        return
    db.session.add(
        EmailReputation(
            email_hash=email_hash,
            email_domain=email_domain,
            reputation_score=100,
            total_requests=0,
            verified_requests=0,
            failed_requests=0,
        )
    )
    try:
        db.session.commit()
    except IntegrityError:
        # another process created the row first
        db.session.rollback()


def _ensure_ip_row(ip: str) -> None:
    exists = db.session.execute(select(IpReputation.id).where(IpReputation.ip == ip)).first()
    if exists is not None:
        return
    db.session.add(
        IpReputation(
            ip=ip,
            subnet=subnet_of(ip),
            reputation_score=100,
            total_requests=0,
            failed_requests=0,
            blocked_count=0,
        )
    )
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()


def _ensure_rows(ip: Optional[str] = None, email_hash: Optional[str] = None, email_domain: Optional[str] = None) -> None:
    """Create missing reputation rows. Commits, so call it before staging other changes."""
    if ip:
        _ensure_ip_row(ip)
    if email_hash:
        _ensure_email_row(email_hash, email_domain)


def _lowered(column, penalty: int):
    """``max(0, column - penalty)`` evaluated by the database."""
    return case((column > penalty, column - penalty), else_=0)


def _update_email(email_hash: str, **values) -> None:
    db.session.execute(
        update(EmailReputation)
        .where(EmailReputation.email_hash == email_hash)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


def _update_ip(ip: str, **values) -> None:
    db.session.execute(
        update(IpReputation).where(IpReputation.ip == ip).values(**values).execution_options(synchronize_session=False)
    )


def _penalize_ip(ip: Optional[str], penalty: int) -> None:
    if not ip:
        return
    _update_ip(ip, reputation_score=_lowered(IpReputation.reputation_score, int(penalty)))


def _penalize_email(email_hash: Optional[str], penalty: int) -> None:
    if not email_hash:
        return
    _update_email(email_hash, reputation_score=_lowered(EmailReputation.reputation_score, int(penalty)))


def email_score(total: int, verified: int, failed: int) -> int:
    total = max(int(total or 0), 1)
    success_rate = 1 - (int(failed or 0) / total)
    base = max(0, min(100, math.floor(success_rate * 100)))
    bonus = math.floor((int(verified or 0) / total) * 20)
    return min(100, base + bonus)


def ip_score(total: int, failed: int) -> int:
    total = max(int(total or 0), 1)
    return max(0, min(100, math.floor((1 - int(failed or 0) / total) * 100)))


def _email_hash(payload: Dict[str, Any]) -> Optional[str]:
    if payload.get("email_hash"):
        return payload["email_hash"]
    if payload.get("email"):
        return hash_email(payload["email"])
    return None


# ---------------------------------------------------------------------------
# Abuse incidents
# ---------------------------------------------------------------------------


def _incident(**fields) -> AbuseIncident:
    incident = AbuseIncident(**fields)
    db.session.add(incident)
    return incident


def on_rate_limit_exceeded(payload: Dict[str, Any]) -> None:
    vector = payload.get("vector") or "ip"
    identifier = payload.get("identifier")
    _ensure_rows(ip=payload.get("ip"), email_hash=identifier if vector == "email" else None)
    _incident(
        incident_type="rate_limit_exceeded",
        vector=vector,
        identifier=identifier,
        ip_address=payload.get("ip"),
        email_hash=identifier if vector == "email" else None,
        domain=identifier if vector == "domain" else None,
        severity=RATE_LIMIT_SEVERITY.get(vector, "low"),
        description=f"Rate limit exceeded for {vector}: {payload.get('attempts')}/{payload.get('max_attempts')} attempts",
        details={
            "vector": vector,
            "attempts": payload.get("attempts"),
            "max_attempts": payload.get("max_attempts"),
            "identifier": identifier,
        },
    )
    _penalize_ip(payload.get("ip"), 10)
    if vector == "email":
        _penalize_email(identifier, 15)
    db.session.commit()


def on_honeypot_triggered(payload: Dict[str, Any]) -> None:
    _ensure_rows(ip=payload.get("ip"))
    _incident(
        incident_type="honeypot_triggered",
        ip_address=payload.get("ip"),
        email_hash=_email_hash(payload),
        domain=payload.get("domain"),
        severity="medium",
        description="Honeypot triggered - likely bot activity",
        details={"ip": payload.get("ip"), "email": "REDACTED" if payload.get("email") else None, "domain": payload.get("domain")},
    )
    _penalize_ip(payload.get("ip"), 20)
    db.session.commit()


def on_otp_failed(payload: Dict[str, Any]) -> None:
    email_hash = _email_hash(payload)
    _ensure_rows(ip=payload.get("ip"), email_hash=email_hash)
    since = _utcnow() - OTP_FAILURE_WINDOW
    recent = (
        AbuseIncident.query.filter(
            AbuseIncident.incident_type == "invalid_otp_attempts",
            AbuseIncident.email_hash == email_hash,
            AbuseIncident.created_at >= since,
        ).count()
        if email_hash
        else 0
    )
    severity = "high" if recent >= OTP_FAILURE_THRESHOLD else "medium"
    _incident(
        incident_type="invalid_otp_attempts",
        ip_address=payload.get("ip"),
        email_hash=email_hash,
        severity=severity,
        description=f"OTP verification failed: {payload.get('reason')}",
        details={"ip": payload.get("ip"), "reason": payload.get("reason"), "recent_failures": recent + 1},
    )
    penalty = 30 if severity == "high" else 15
    _penalize_email(email_hash, penalty)
    _penalize_ip(payload.get("ip"), penalty // 2)
    db.session.commit()


def on_ip_mismatch(payload: Dict[str, Any]) -> None:
    email_hash = _email_hash(payload)
    _ensure_rows(ip=payload.get("verification_ip"), email_hash=email_hash)
    _incident(
        incident_type="ip_mismatch",
        ip_address=payload.get("verification_ip"),
        email_hash=email_hash,
        severity="critical",
        description="IP mismatch detected during OTP verification - possible relay attack",
        details={"original_ip": payload.get("original_ip"), "verification_ip": payload.get("verification_ip")},
    )
    _penalize_ip(payload.get("verification_ip"), 40)
    _penalize_email(email_hash, 40)
    db.session.commit()


# ---------------------------------------------------------------------------
# Reputation tracking
# ---------------------------------------------------------------------------


def track_email_reputation(payload: Dict[str, Any]) -> None:
    email = payload.get("email") or ""
    email_hash = _email_hash(payload)
    if not email_hash:
        return
    domain = email.split("@", 1)[1].lower() if "@" in email else None
    _ensure_rows(email_hash=email_hash, email_domain=domain)

    values: Dict[str, Any] = {"total_requests": EmailReputation.total_requests + 1, "last_seen_at": _utcnow()}
    if domain:
        values["email_domain"] = domain
    if payload.get("event") == OTP_VERIFIED:
        values["verified_requests"] = EmailReputation.verified_requests + 1
    elif payload.get("event") == OTP_FAILED:
        values["failed_requests"] = EmailReputation.failed_requests + 1
    _update_email(email_hash, **values)

    # the UPDATE holds the row until commit, so the score matches these counters
    total, verified, failed = db.session.execute(
        select(EmailReputation.total_requests, EmailReputation.verified_requests, EmailReputation.failed_requests).where(
            EmailReputation.email_hash == email_hash
        )
    ).one()
    _update_email(email_hash, reputation_score=email_score(total, verified, failed))
    db.session.commit()


def track_ip_reputation(payload: Dict[str, Any]) -> None:
    ip = payload.get("ip")
    if not ip:
        return
    _ensure_rows(ip=ip)

    values: Dict[str, Any] = {
        "subnet": subnet_of(ip),
        "total_requests": IpReputation.total_requests + 1,
        "last_seen_at": _utcnow(),
    }
    if not payload.get("success", True):
        values["failed_requests"] = IpReputation.failed_requests + 1
    _update_ip(ip, **values)

    total, failed = db.session.execute(
        select(IpReputation.total_requests, IpReputation.failed_requests).where(IpReputation.ip == ip)
    ).one()
    _update_ip(ip, reputation_score=ip_score(total, failed))
    db.session.commit()


def register_listeners(bus: EventBus) -> EventBus:
    bus.subscribe(RATE_LIMIT_EXCEEDED, on_rate_limit_exceeded)
    bus.subscribe(HONEYPOT_TRIGGERED, on_honeypot_triggered)
    bus.subscribe(OTP_FAILED, on_otp_failed)
    bus.subscribe(IP_MISMATCH, on_ip_mismatch)
    for event in (OTP_SENT, OTP_VERIFIED, OTP_FAILED):
        bus.subscribe(event, track_email_reputation)
    bus.subscribe(REQUEST_PROCESSED, track_ip_reputation)
    return bus
