"""One-time codes for the anonymous flow.

Код отправляется на email, а клиенту возвращается подписанный токен
(itsdangerous) с email, IP клиента, доменом, целевым IP и HMAC кода. Сервер
ничего не хранит: проверка кода - это проверка подписи, срока и HMAC.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import string
from typing import Any, Dict, Tuple

from flask import current_app
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from ..events import IP_MISMATCH, OTP_FAILED, OTP_SENT, OTP_VERIFIED, publish
from ..exceptions import SimpleModeError
from ..services import notifications_service

logger = logging.getLogger(__name__)

_SALT = "unblocker-simple-otp"


def _serializer(secret_key: str) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(secret_key=secret_key, salt=_SALT)


def generate_code(length: int = 6) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(max(4, int(length))))


def code_digest(secret_key: str, code: str) -> str:
    return hmac.new(secret_key.encode("utf-8"), str(code).strip().encode("utf-8"), hashlib.sha256).hexdigest()


class OtpService:
    def __init__(self, secret_key: str, expires_minutes: int = 5, length: int = 6) -> None:
        self.secret_key = secret_key
        self.expires_minutes = int(expires_minutes)
        self.length = int(length)

    @classmethod
    def from_app(cls) -> "OtpService":
        cfg = current_app.config
        return cls(
            secret_key=cfg.get("JWT_SECRET_KEY") or current_app.secret_key,
            expires_minutes=int(cfg.get("SIMPLE_MODE_OTP_EXPIRES_MINUTES", 5)),
            length=int(cfg.get("SIMPLE_MODE_OTP_LENGTH", 6)),
        )

    def issue(self, email: str, client_ip: str, domain: str, target_ip: str) -> Tuple[str, str]:
        """Mail a fresh code to ``email``; return ``(token, code)``."""
        code = generate_code(self.length)
        token = _serializer(self.secret_key).dumps(
            {
                "email": email,
                "client_ip": client_ip,
                "domain": domain,
                "ip": target_ip,
                "code": code_digest(self.secret_key, code),
            }
        )
        notifications_service.notify(
            "simple_unblock_otp",
            email,
            {"code": code, "domain": domain, "ip": target_ip, "expires_minutes": self.expires_minutes},
        )
        publish(OTP_SENT, {"email": email, "ip": client_ip, "domain": domain})
        logger.info("Simple unblock OTP sent", extra={"domain": domain, "client_ip": client_ip})
        return token, code

    def _fail(self, reason: str, client_ip: str, email: str = "", error_code: str = "invalid_code") -> SimpleModeError:
        publish(OTP_FAILED, {"email": email, "ip": client_ip, "reason": reason})
        logger.warning("Simple unblock OTP failed", extra={"reason": reason, "client_ip": client_ip})
        return SimpleModeError(reason, error_code=error_code)

    def verify(self, token: str, code: str, client_ip: str) -> Dict[str, Any]:
        """Check signature, age, code and requesting IP; returns the token payload."""
        serializer = _serializer(self.secret_key)
        try:
            data = serializer.loads(token or "", max_age=self.expires_minutes * 60)
        except SignatureExpired:
            _valid, expired = serializer.loads_unsafe(token)
            email = expired.get("email", "") if isinstance(expired, dict) else ""
            raise self._fail("Verification code expired", client_ip, email, error_code="expired_code") from None
        except BadSignature:
            raise self._fail("Invalid verification token", client_ip) from None

        if not isinstance(data, dict):
            raise self._fail("Invalid verification token", client_ip)
        email = data.get("email", "")

        if not hmac.compare_digest(code_digest(self.secret_key, code or ""), data.get("code", "")):
            raise self._fail("Invalid verification code", client_ip, email)

        if data.get("client_ip") != client_ip:
            publish(
                IP_MISMATCH,
                {"email": email, "original_ip": data.get("client_ip"), "verification_ip": client_ip},
            )
            logger.warning(
                "Simple unblock IP mismatch",
                extra={"original_ip": data.get("client_ip"), "verification_ip": client_ip},
            )
            raise SimpleModeError("Verification must come from the same IP address", error_code="ip_mismatch")

        publish(OTP_VERIFIED, {"email": email, "ip": client_ip, "domain": data.get("domain")})
        return data
