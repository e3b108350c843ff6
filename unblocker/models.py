"""
Модели базы данных.

Хосты, пользователи и их права доступа, отчёты о проверках, а также
счётчики репутации и инциденты для анонимного (simple) режима.
Приватные ключи хостов хранятся в БД только в зашифрованном виде (Fernet).
"""

import base64
import hashlib
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from flask import current_app, has_app_context

from .exceptions import KeyProvisioningError
from .extensions import db

PANEL_TYPES = ("cpanel", "directadmin", "none")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite returns naive datetimes; everything we store is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _insecure_key_allowed() -> bool:
    if os.environ.get("FLASK_ENV") == "development":
        return True
    if has_app_context():
        return bool(current_app.config.get("DEBUG") or current_app.config.get("TESTING"))
    return False


def _host_keys_fernet() -> Fernet:
    """Return Fernet instance for host private keys.

    Key priority:
    1) HOST_KEYS_ENCRYPTION_KEY (already base64 urlsafe 32-byte key)
    2) Derived key from SECRET_KEY
    3) Fixed development key, only in development or tests
    """
    raw_key = (os.environ.get("HOST_KEYS_ENCRYPTION_KEY") or "").strip()
    if raw_key:
        return Fernet(raw_key.encode("utf-8"))

    secret = (os.environ.get("SECRET_KEY") or "").strip()
    if not secret:
        if not _insecure_key_allowed():
            raise KeyProvisioningError(
                "HOST_KEYS_ENCRYPTION_KEY or SECRET_KEY must be set to store host keys",
                context={"setting": "HOST_KEYS_ENCRYPTION_KEY"},
            )
        secret = "dev-insecure-secret"
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_private_key(pem: str) -> str:
    return _host_keys_fernet().encrypt((pem or "").encode("utf-8")).decode("utf-8")


def decrypt_private_key(token: str) -> str:
    """Decrypt a stored private key. Returns '' when the token is unusable."""
    if not token:
        return ""
    try:
        return _host_keys_fernet().decrypt(token.encode("utf-8")).decode("utf-8")
    except (InvalidToken, ValueError, TypeError):
        return ""


def hash_email(email: str) -> str:
    return hashlib.sha256((email or "").strip().lower().encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Пользователи и хосты
# ---------------------------------------------------------------------------


class User(db.Model):
    """Оператор или клиент. ``parent_user_id`` задаёт делегированного пользователя."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    first_name = db.Column(db.String(128), nullable=False, default="")
    last_name = db.Column(db.String(128), nullable=False, default="")
    is_admin = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    parent_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)

    parent = db.relationship("User", remote_side=[id], backref="authorized_users")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or self.email

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "is_admin": bool(self.is_admin),
            "parent_user_id": self.parent_user_id,
        }


class Host(db.Model):
    """Управляемый сервер.

    Поле ``hash`` хранит управляющий приватный ключ (зашифрован Fernet),
    ``hash_public`` - соответствующий публичный ключ.
    """

    __tablename__ = "hosts"

    id = db.Column(db.Integer, primary_key=True)
    fqdn = db.Column(db.String(255), unique=True, nullable=False)
    alias = db.Column(db.String(255), nullable=True)
    ip = db.Column(db.String(64), nullable=True)
    port_ssh = db.Column(db.Integer, nullable=False, default=22)
    admin = db.Column(db.String(64), nullable=False, default="root")
    panel = db.Column(db.String(32), nullable=False, default="none")
    _hash = db.Column("hash", db.Text, nullable=True)
    hash_public = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)

    @property
    def hash(self) -> str:
        return decrypt_private_key(self._hash or "")

    @hash.setter
    def hash(self, value: Optional[str]) -> None:
        self._hash = encrypt_private_key(value) if value else None

    @property
    def has_keys(self) -> bool:
        return bool(self._hash and self.hash_public)

    @property
    def address(self) -> str:
        return self.ip or self.fqdn

    @property
    def panel_type(self) -> str:
        panel = (self.panel or "").strip().lower()
        return panel if panel in PANEL_TYPES else "none"

    def to_safe_log_dict(self) -> Dict[str, Any]:
        return {"host_id": self.id, "host_fqdn": self.fqdn, "port": self.port_ssh, "panel": self.panel_type}

    def to_dict(self) -> Dict[str, Any]:
        # Never expose key material in normal serialization.
        return {
            "id": self.id,
            "fqdn": self.fqdn,
            "alias": self.alias,
            "ip": self.ip,
            "port_ssh": self.port_ssh,
            "admin": self.admin,
            "panel": self.panel_type,
            "has_keys": self.has_keys,
        }


class Hosting(db.Model):
    """Хостинг-аккаунт (домен) на конкретном сервере."""

    __tablename__ = "hostings"
    __table_args__ = (db.Index("ix_hostings_domain", "domain"),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    host_id = db.Column(db.Integer, db.ForeignKey("hosts.id"), nullable=False)
    domain = db.Column(db.String(255), nullable=False)
    username = db.Column(db.String(64), nullable=True)
    is_suspended = db.Column(db.Boolean, nullable=False, default=False)

    host = db.relationship("Host", backref="hostings")
    user = db.relationship("User", backref="hostings")


class UserHostPermission(db.Model):
    """Прямой доступ пользователя к хосту."""

    __tablename__ = "user_host_permissions"
    __table_args__ = (db.UniqueConstraint("user_id", "host_id", name="uq_user_host"),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    host_id = db.Column(db.Integer, db.ForeignKey("hosts.id"), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)


class UserHostingPermission(db.Model):
    """Доступ через хостинг/домен: даёт права на хост, где он размещён."""

    __tablename__ = "user_hosting_permissions"
    __table_args__ = (db.UniqueConstraint("user_id", "hosting_id", name="uq_user_hosting"),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    hosting_id = db.Column(db.Integer, db.ForeignKey("hostings.id"), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    hosting = db.relationship("Hosting")


class BfmWhitelistEntry(db.Model):
    """IP, добавленный в allow-list BFM DirectAdmin; снимается по ``expires_at``."""

    __tablename__ = "bfm_whitelist_entries"
    __table_args__ = (
        db.Index("ix_bfm_whitelist_host_ip", "host_id", "ip", "removed"),
        db.Index("ix_bfm_whitelist_expires", "expires_at", "removed"),
    )

    id = db.Column(db.Integer, primary_key=True)
    host_id = db.Column(db.Integer, db.ForeignKey("hosts.id", ondelete="CASCADE"), nullable=False)
    ip = db.Column(db.String(64), nullable=False)
    added_at = db.Column(db.DateTime, nullable=False, default=_utcnow)
    expires_at = db.Column(db.DateTime, nullable=False)
    removed = db.Column(db.Boolean, nullable=False, default=False)
    removed_at = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    host = db.relationship("Host")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return _as_aware(self.expires_at) <= (_as_aware(now) or _utcnow())

    @property
    def is_active(self) -> bool:
        return not self.removed and not self.is_expired()

    def mark_removed(self, now: Optional[datetime] = None) -> None:
        self.removed = True
        self.removed_at = now or _utcnow()


# ---------------------------------------------------------------------------
# Отчёты и аудит
# ---------------------------------------------------------------------------


class Report(db.Model):
    """Результат одной проверки. После создания не меняется (кроме last_read)."""

    __tablename__ = "reports"
    __table_args__ = (db.Index("ix_reports_created_at", "created_at"),)

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    host_id = db.Column(db.Integer, db.ForeignKey("hosts.id"), nullable=False)
    ip = db.Column(db.String(64), nullable=False)
    logs = db.Column(db.JSON, nullable=False, default=dict)
    analysis = db.Column(db.JSON, nullable=False, default=dict)
    last_read = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    user = db.relationship("User")
    host = db.relationship("Host")

    def expires_at(self, ttl_seconds: int) -> datetime:
        return _as_aware(self.created_at) + timedelta(seconds=int(ttl_seconds))

    def is_expired(self, ttl_seconds: int, now: Optional[datetime] = None) -> bool:
        now = _as_aware(now) or _utcnow()
        return now > self.expires_at(ttl_seconds)

    def to_dict(self) -> Dict[str, Any]:
        created = _as_aware(self.created_at)
        return {
            "id": self.id,
            "ip": self.ip,
            "user_id": self.user_id,
            "host_id": self.host_id,
            "host_fqdn": self.host.fqdn if self.host else None,
            "logs": self.logs or {},
            "analysis": self.analysis or {},
            "created_at": created.isoformat() if created else None,
        }


class AuditLog(db.Model):
    __tablename__ = "audit_log"

    id = db.Column(db.Integer, primary_key=True)
    actor = db.Column(db.String(255), nullable=True)
    action = db.Column(db.String(128), nullable=False)
    payload_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)


# ---------------------------------------------------------------------------
# Simple mode: counters, incidents, reputation
# ---------------------------------------------------------------------------


class RateCounter(db.Model):
    """SQL fallback for shared throttle counters (when Redis is not configured)."""

    __tablename__ = "rate_counters"

    key = db.Column(db.String(255), primary_key=True)
    count = db.Column(db.Integer, nullable=False, default=0)
    expires_at = db.Column(db.DateTime, nullable=False)


class AbuseIncident(db.Model):
    __tablename__ = "abuse_incidents"
    __table_args__ = (
        db.Index("ix_abuse_incidents_type", "incident_type"),
        db.Index("ix_abuse_incidents_email_hash", "email_hash"),
    )

    id = db.Column(db.Integer, primary_key=True)
    incident_type = db.Column(db.String(64), nullable=False)
    vector = db.Column(db.String(16), nullable=True)  # ip|email|domain|subnet|global
    identifier = db.Column(db.String(255), nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    email_hash = db.Column(db.String(64), nullable=True)
    domain = db.Column(db.String(255), nullable=True)
    severity = db.Column(db.String(16), nullable=False, default="low")
    description = db.Column(db.Text, nullable=False, default="")
    details = db.Column("metadata", db.JSON, nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def resolve(self) -> None:
        if self.resolved_at is None:
            self.resolved_at = _utcnow()


class EmailReputation(db.Model):
    """Репутация email. Храним только SHA-256 хеш адреса."""

    __tablename__ = "email_reputation"

    id = db.Column(db.Integer, primary_key=True)
    email_hash = db.Column(db.String(64), unique=True, nullable=False)
    email_domain = db.Column(db.String(255), nullable=True)
    reputation_score = db.Column(db.Integer, nullable=False, default=100)
    total_requests = db.Column(db.Integer, nullable=False, default=0)
    verified_requests = db.Column(db.Integer, nullable=False, default=0)
    failed_requests = db.Column(db.Integer, nullable=False, default=0)
    last_seen_at = db.Column(db.DateTime, nullable=True)


class IpReputation(db.Model):
    __tablename__ = "ip_reputation"

    id = db.Column(db.Integer, primary_key=True)
    ip = db.Column(db.String(64), unique=True, nullable=False)
    subnet = db.Column(db.String(64), nullable=True)
    reputation_score = db.Column(db.Integer, nullable=False, default=100)
    total_requests = db.Column(db.Integer, nullable=False, default=0)
    failed_requests = db.Column(db.Integer, nullable=False, default=0)
    blocked_count = db.Column(db.Integer, nullable=False, default=0)
    last_seen_at = db.Column(db.DateTime, nullable=True)
