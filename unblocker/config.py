"""
Модуль конфигурации приложения.

Классы конфигурации Flask для разработки, тестов и продакшена.
Все параметры читаются из переменных окружения, чтобы секреты и
адреса хостов не попадали в код.
"""

import os
import secrets
import warnings
from dataclasses import dataclass, field
from datetime import timedelta
from typing import FrozenSet, Optional


def _safe_secret_key() -> str:
    """Получить SECRET_KEY из env или сгенерировать случайный.

    В продакшене ВСЕГДА задавайте SECRET_KEY через переменную окружения,
    иначе при перезапуске зашифрованные ключи хостов не расшифруются.
    """
    key = os.environ.get("SECRET_KEY", "").strip()
    if not key:
        key = secrets.token_hex(32)
        if os.environ.get("FLASK_ENV") != "development":
            warnings.warn(
                "SECRET_KEY is not set, using a random key. "
                "Set SECRET_KEY in the environment for production.",
                RuntimeWarning,
                stacklevel=2,
            )
    return key


def _env_bool(name: str, default: str = "0") -> bool:
    return (os.environ.get(name, default) or default).strip().lower() in {"1", "true", "yes", "y"}


def _parse_str_set(env_name: str) -> FrozenSet[str]:
    raw = (os.environ.get(env_name, "") or "").strip()
    if not raw:
        return frozenset()
    return frozenset(part.strip().lower() for part in raw.split(",") if part.strip())


class Config:
    """Базовый класс конфигурации."""

    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URI", f"sqlite:///{os.path.join(BASE_DIR, 'unblocker.db')}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SECRET_KEY = _safe_secret_key()
    JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY", "").strip() or SECRET_KEY
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(hours=int(os.environ.get("JWT_ACCESS_TOKEN_HOURS", 12)))

    # Логирование: LOG_LEVEL и LOG_FILE. По умолчанию INFO и только stdout.
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FILE = os.environ.get("LOG_FILE")

    # Число доверенных reverse-proxy перед приложением. 0: X-Forwarded-For игнорируется.
    PROXY_FIX_X_FOR = int(os.environ.get("PROXY_FIX_X_FOR", 0))

    # --- Celery / Redis ---
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://localhost:6379/0")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")
    CELERY_TASK_ALWAYS_EAGER = False
    # Shared throttle counters. Empty -> SQL counters table.
    REDIS_URL = os.environ.get("REDIS_URL", "").strip()

    # --- SMTP ---
    MAIL_SERVER = os.environ.get("MAIL_SERVER", "")
    MAIL_PORT = int(os.environ.get("MAIL_PORT", 587))
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME", "")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD", "")
    MAIL_USE_TLS = _env_bool("MAIL_USE_TLS", "1")
    MAIL_DEFAULT_SENDER = os.environ.get("MAIL_DEFAULT_SENDER", "")
    # Base URL for report links in emails, e.g. https://unblock.example.com
    REPORT_BASE_URL = os.environ.get("REPORT_BASE_URL", "").rstrip("/")

    # --- Unblock core ---
    UNBLOCK_ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL", "").strip()
    # Max anonymous attempts per window
    UNBLOCK_ATTEMPTS = int(os.environ.get("ATTEMPTS", 10))
    # Seconds a report stays readable after creation (7 days)
    UNBLOCK_REPORT_EXPIRATION = int(os.environ.get("REPORT_EXPIRATION", 604800))
    UNBLOCK_MAX_RETRY_ATTEMPTS = int(os.environ.get("MAX_RETRY_ATTEMPTS", 3))
    UNBLOCK_RETRY_DELAY = int(os.environ.get("RETRY_DELAY", 5))
    # CSV of FQDNs that get elevated failure notifications
    UNBLOCK_CRITICAL_HOSTS = _parse_str_set("CRITICAL_HOSTS")
    UNBLOCK_NOTIFY_CONNECTION_FAILURES = _env_bool("NOTIFY_CONNECTION_FAILURES", "1")
    UNBLOCK_NOTIFY_CRITICAL_ERRORS = _env_bool("NOTIFY_CRITICAL_ERRORS", "1")
    UNBLOCK_WHITELIST_TTL = int(os.environ.get("UNBLOCK_WHITELIST_TTL", 86400))
    UNBLOCK_SSH_TIMEOUT = int(os.environ.get("SSH_TIMEOUT", 30))
    # Ephemeral private keys live here, never under a web-served folder.
    UNBLOCK_SSH_KEYS_DIR = os.environ.get("SSH_KEYS_DIR", os.path.join(BASE_DIR, "storage", "ssh"))
    UNBLOCK_SSH_KEY_MAX_AGE = int(os.environ.get("SSH_KEY_MAX_AGE", 86400))
    UNBLOCK_ANONYMOUS_USER_EMAIL = os.environ.get("ANONYMOUS_USER_EMAIL", "anonymous@system.local")

    # --- HQ host: IP is checked against ModSecurity there and whitelisted temporarily ---
    # host id wins over fqdn; both empty disables the job
    UNBLOCK_HQ_HOST_ID = os.environ.get("HQ_HOST_ID", "").strip() or None
    UNBLOCK_HQ_HOST_FQDN = os.environ.get("HQ_HOST_FQDN", "").strip()
    UNBLOCK_HQ_WHITELIST_TTL = int(os.environ.get("HQ_WHITELIST_TTL", 7200))

    # --- Simple mode (anonymous, OTP verified) ---
    SIMPLE_MODE_ENABLED = _env_bool("UNBLOCK_SIMPLE_MODE", "0")
    SIMPLE_MODE_THROTTLE_PER_MINUTE = int(os.environ.get("UNBLOCK_SIMPLE_THROTTLE_PER_MINUTE", 3))
    SIMPLE_MODE_THROTTLE_EMAIL_PER_HOUR = int(os.environ.get("UNBLOCK_SIMPLE_THROTTLE_EMAIL_PER_HOUR", 5))
    SIMPLE_MODE_THROTTLE_DOMAIN_PER_HOUR = int(os.environ.get("UNBLOCK_SIMPLE_THROTTLE_DOMAIN_PER_HOUR", 10))
    SIMPLE_MODE_THROTTLE_SUBNET_PER_HOUR = int(os.environ.get("UNBLOCK_SIMPLE_THROTTLE_SUBNET_PER_HOUR", 20))
    SIMPLE_MODE_THROTTLE_GLOBAL_PER_HOUR = int(os.environ.get("UNBLOCK_SIMPLE_THROTTLE_GLOBAL_PER_HOUR", 500))
    SIMPLE_MODE_WHITELIST_TTL = int(os.environ.get("UNBLOCK_SIMPLE_WHITELIST_TTL", 3600))
    SIMPLE_MODE_OTP_EXPIRES_MINUTES = int(os.environ.get("UNBLOCK_SIMPLE_OTP_EXPIRES_MINUTES", 5))
    SIMPLE_MODE_OTP_LENGTH = int(os.environ.get("UNBLOCK_SIMPLE_OTP_LENGTH", 6))


class DevelopmentConfig(Config):
    """Настройки для режима разработки."""

    DEBUG = True


class TestingConfig(Config):
    """Настройки для тестов."""

    TESTING = True
    DEBUG = True
    CELERY_BROKER_URL = "memory://"
    CELERY_RESULT_BACKEND = "cache+memory://"
    CELERY_TASK_ALWAYS_EAGER = True
    REDIS_URL = ""
    UNBLOCK_ADMIN_EMAIL = "admin@example.com"
    UNBLOCK_RETRY_DELAY = 0
    UNBLOCK_CRITICAL_HOSTS = frozenset()
    SIMPLE_MODE_ENABLED = True
    UNBLOCK_HQ_HOST_ID = None
    UNBLOCK_HQ_HOST_FQDN = ""


class ProductionConfig(Config):
    """Настройки для режима продакшена."""

    DEBUG = False


@dataclass(frozen=True)
class UnblockSettings:
    """Snapshot of the unblock options, decoupled from Flask config."""

    admin_email: str = ""
    attempts: int = 10
    report_expiration: int = 604800
    max_retry_attempts: int = 3
    retry_delay: int = 5
    critical_hosts: FrozenSet[str] = field(default_factory=frozenset)
    notify_connection_failures: bool = True
    notify_critical_errors: bool = True
    whitelist_ttl: int = 86400
    ssh_timeout: int = 30
    ssh_keys_dir: str = ""
    ssh_key_max_age: int = 86400
    anonymous_user_email: str = "anonymous@system.local"
    hq_host_id: Optional[int] = None
    hq_fqdn: str = ""
    hq_whitelist_ttl: int = 7200

    def is_critical_host(self, fqdn: Optional[str]) -> bool:
        return bool(fqdn) and fqdn.strip().lower() in self.critical_hosts

    @property
    def hq_configured(self) -> bool:
        return self.hq_host_id is not None or bool(self.hq_fqdn)


def unblock_settings(cfg=None) -> UnblockSettings:
    """Build :class:`UnblockSettings` from ``cfg`` or the current app config."""
    if cfg is None:
        from flask import current_app

        cfg = current_app.config
    return UnblockSettings(
        admin_email=(cfg.get("UNBLOCK_ADMIN_EMAIL") or "").strip(),
        attempts=int(cfg.get("UNBLOCK_ATTEMPTS", 10)),
        report_expiration=int(cfg.get("UNBLOCK_REPORT_EXPIRATION", 604800)),
        max_retry_attempts=max(1, int(cfg.get("UNBLOCK_MAX_RETRY_ATTEMPTS", 3))),
        retry_delay=max(0, int(cfg.get("UNBLOCK_RETRY_DELAY", 5))),
        critical_hosts=frozenset(h.lower() for h in (cfg.get("UNBLOCK_CRITICAL_HOSTS") or ())),
        notify_connection_failures=bool(cfg.get("UNBLOCK_NOTIFY_CONNECTION_FAILURES", True)),
        notify_critical_errors=bool(cfg.get("UNBLOCK_NOTIFY_CRITICAL_ERRORS", True)),
        whitelist_ttl=int(cfg.get("UNBLOCK_WHITELIST_TTL", 86400)),
        ssh_timeout=int(cfg.get("UNBLOCK_SSH_TIMEOUT", 30)),
        ssh_keys_dir=str(cfg.get("UNBLOCK_SSH_KEYS_DIR") or ""),
        ssh_key_max_age=int(cfg.get("UNBLOCK_SSH_KEY_MAX_AGE", 86400)),
        anonymous_user_email=str(cfg.get("UNBLOCK_ANONYMOUS_USER_EMAIL") or "anonymous@system.local"),
        hq_host_id=int(cfg["UNBLOCK_HQ_HOST_ID"]) if cfg.get("UNBLOCK_HQ_HOST_ID") else None,
        hq_fqdn=str(cfg.get("UNBLOCK_HQ_HOST_FQDN") or "").strip().lower(),
        hq_whitelist_ttl=int(cfg.get("UNBLOCK_HQ_WHITELIST_TTL", 7200)),
    )
