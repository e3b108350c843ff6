"""Exception hierarchy for firewall checks and unblock operations.

Every error carries the context needed for the administrator diagnostics
email; ``public_message`` is the only text ever shown to end users.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

GENERIC_USER_MESSAGE = "Temporary system error, please contact support."


class FirewallError(Exception):
    """Base class for all unblocker errors."""

    http_status = 500
    error_code = "firewall_error"
    public_message = GENERIC_USER_MESSAGE

    def __init__(self, message: str = "", *, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.context: Dict[str, Any] = dict(context or {})

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error_code, "message": self.public_message}


class InvalidIpError(FirewallError):
    http_status = 400
    error_code = "invalid_ip"

    def __init__(self, ip: Any) -> None:
        super().__init__(f"Invalid IP address: {ip!r}", context={"ip": ip})
        self.ip = ip

    @property
    def public_message(self) -> str:  # type: ignore[override]
        return f"Invalid IP address: {self.ip}"


class AccessDeniedError(FirewallError):
    http_status = 403
    error_code = "forbidden"
    public_message = "You do not have access to this host."

    def __init__(self, user_id: Any, host_id: Any) -> None:
        super().__init__(
            f"User {user_id} has no access to host {host_id}",
            context={"user_id": user_id, "host_id": host_id},
        )
        self.user_id = user_id
        self.host_id = host_id


class ModelNotFoundError(FirewallError):
    http_status = 404
    error_code = "not_found"
    public_message = "Not found."

    def __init__(self, model: str, ident: Any) -> None:
        super().__init__(f"{model} {ident} not found", context={"model": model, "id": ident})
        self.model = model
        self.ident = ident


class ReportExpiredError(FirewallError):
    http_status = 403
    error_code = "report_expired"
    public_message = "This report has expired."


class ConnectionFailedError(FirewallError):
    """SSH connection could not be established (refused, timeout, handshake)."""

    http_status = 503
    error_code = "connection_failed"

    def __init__(
        self,
        message: str,
        *,
        host: Optional[str] = None,
        port: Optional[int] = None,
        attempts: int = 1,
        ip: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        ctx = {"host": host, "port": port, "attempts": attempts, "ip": ip}
        ctx.update(context or {})
        super().__init__(message, context=ctx)
        self.host = host
        self.port = port
        self.attempts = attempts
        self.ip = ip

    def with_attempts(self, attempts: int) -> "ConnectionFailedError":
        exc = self.__class__(str(self), host=self.host, port=self.port, attempts=attempts, ip=self.ip)
        exc.__cause__ = self.__cause__ or self
        return exc


class SshAuthenticationError(ConnectionFailedError):
    """The host rejected our key."""

    error_code = "ssh_authentication_failed"


class CommandExecutionError(FirewallError):
    """A remote command exited non-zero or the exec channel failed."""

    error_code = "command_failed"

    def __init__(
        self,
        command: str,
        *,
        output: str = "",
        error_output: str = "",
        exit_status: Optional[int] = None,
        host: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        super().__init__(
            message or f"Command failed with exit status {exit_status}: {command}",
            context={"command": command, "exit_status": exit_status, "host": host},
        )
        self.command = command
        self.output = output
        self.error_output = error_output
        self.exit_status = exit_status
        self.host = host


class ParseAmbiguityError(FirewallError):
    """Tag for deny-list lines we matched but could not fully extract.

    Never raised by the parser; it travels in the admin notification only.
    """

    error_code = "parse_ambiguity"

    def __init__(self, raw: str, *, ip: str = "", date: str = "") -> None:
        super().__init__(f"IP: {ip}, Date: {date}, Line: {raw}", context={"ip": ip, "date": date})
        self.raw = raw
        self.ip = ip
        self.date = date


class RemediationVerificationError(FirewallError):
    error_code = "unblock_not_verified"

    def __init__(self, ip: str, output: str = "") -> None:
        super().__init__(f"IP {ip} still present after removal", context={"ip": ip})
        self.ip = ip
        self.output = output


class KeyProvisioningError(FirewallError):
    error_code = "key_provisioning_failed"


class KeyGenerationError(KeyProvisioningError):
    error_code = "key_generation_failed"


class KeyInstallError(KeyProvisioningError):
    error_code = "key_install_failed"


class RateLimitExceeded(FirewallError):
    http_status = 429
    error_code = "rate_limited"
    public_message = "Too many requests, please try again later."

    def __init__(self, vector: str, identifier: str, attempts: int, max_attempts: int, retry_after: int = 0) -> None:
        super().__init__(
            f"Rate limit exceeded for {vector}",
            context={"vector": vector, "attempts": attempts, "max_attempts": max_attempts},
        )
        self.vector = vector
        self.identifier = identifier
        self.attempts = attempts
        self.max_attempts = max_attempts
        self.retry_after = retry_after

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out.update({"vector": self.vector, "retry_after": int(self.retry_after)})
        return out


class SimpleModeError(FirewallError):
    """Invalid anonymous request (bad domain, bad or expired code)."""

    http_status = 400
    error_code = "invalid_request"

    def __init__(self, message: str, *, error_code: Optional[str] = None) -> None:
        super().__init__(message)
        if error_code:
            self.error_code = error_code

    @property
    def public_message(self) -> str:  # type: ignore[override]
        return str(self)
