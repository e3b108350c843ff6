"""
Вспомогательные функции: проверка IP и доменов, адрес клиента.

Используются и API-маршрутами, и фоновыми задачами.
"""

import ipaddress
import re
from typing import Any, Optional

from flask import Request

from .exceptions import InvalidIpError, SimpleModeError

DOMAIN_RE = re.compile(r"^[a-z0-9.-]+\.[a-z]{2,}$")


def validate_ip(value: Any) -> str:
    """Вернуть нормализованный IPv4/IPv6 адрес или бросить InvalidIpError."""
    text = str(value).strip() if value is not None else ""
    try:
        return str(ipaddress.ip_address(text))
    except ValueError:
        raise InvalidIpError(value) from None


def normalize_domain(value: Any) -> str:
    """lowercase, без ``www.``; бросает SimpleModeError при неверной форме."""
    domain = str(value or "").strip().lower().rstrip(".")
    if domain.startswith("www."):
        domain = domain[4:]
    if not domain or not DOMAIN_RE.match(domain) or ".." in domain:
        raise SimpleModeError("Invalid domain format", error_code="invalid_domain")
    return domain


def subnet_of(ip: str) -> Optional[str]:
    """/24 для IPv4, /48 для IPv6."""
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return None
    prefix = 24 if addr.version == 4 else 48
    return str(ipaddress.ip_network(f"{addr}/{prefix}", strict=False))


def client_ip(request: Request) -> str:
    """IP клиента.

    Заголовки прокси сами по себе не учитываются: доверенные хопы
    разворачивает ProxyFix (см. PROXY_FIX_X_FOR), и remote_addr уже
    содержит адрес клиента.
    """
    return request.remote_addr or ""
