"""One authenticated SSH connection to one host (paramiko).

Commands run strictly one after another. Teardown always closes the client; a failing close is logged and never
masks the result or the original error. The ephemeral key is revoked by the
caller (`SshKeyManager.credential_scope`).
"""

from __future__ import annotations

import logging
import socket
import time
from typing import Any, Callable, Dict, List, Optional

import paramiko

from ..exceptions import CommandExecutionError, ConnectionFailedError, SshAuthenticationError

logger = logging.getLogger(__name__)

PREVIEW_LIMIT = 200


def output_preview(output: str, limit: int = PREVIEW_LIMIT) -> str:
    """Return ``output`` as is when short, else the first ``limit`` chars + '...'."""
    output = output or ""
    if len(output) <= limit:
        return output
    return output[:limit] + "..."


def is_tolerant_command(command: str) -> bool:
    """grep-style lookups end with ``|| true``: an empty match is not a failure."""
    return command.rstrip().endswith("|| true")


class SshSession:
    """Wraps a paramiko client bound to ``host``.

    Usage::

        with keys.credential_scope(host) as cred, SshSession(host, key_filename=cred.private_key_path) as session:
            session.connect_with_retry(3, 5)
            out = session.execute("csf -g 192.0.2.1")
    """

    def __init__(
        self,
        host,
        *,
        key_filename: Optional[str] = None,
        pkey: Optional[paramiko.PKey] = None,
        timeout: int = 30,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ) -> None:
        self.host = host
        self.key_filename = key_filename
        self.pkey = pkey
        self.timeout = int(timeout)
        self._client_factory = client_factory
        self._client: Optional[paramiko.SSHClient] = None
        self.retry_log: List[Dict[str, Any]] = []

    # -- connection ---------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._client is not None

    def _host_label(self) -> str:
        return getattr(self.host, "fqdn", None) or str(getattr(self.host, "address", self.host))

    def connect(self) -> "SshSession":
        address = getattr(self.host, "address", None) or self._host_label()
        port = int(getattr(self.host, "port_ssh", 22) or 22)
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=address,
                port=port,
                username=getattr(self.host, "admin", None) or "root",
                key_filename=self.key_filename,
                pkey=self.pkey,
                timeout=self.timeout,
                banner_timeout=self.timeout,
                auth_timeout=self.timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except paramiko.AuthenticationException as exc:
            client.close()
            raise SshAuthenticationError(
                f"Permission denied (publickey) for {address}:{port}", host=self._host_label(), port=port
            ) from exc
        except (paramiko.SSHException, socket.timeout, OSError, EOFError) as exc:
            client.close()
            raise ConnectionFailedError(
                f"SSH connection to {address}:{port} failed: {exc}", host=self._host_label(), port=port
            ) from exc
        self._client = client
        return self

    def connect_with_retry(
        self,
        max_attempts: int,
        delay: float,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> int:
        """Connect, retrying connection failures. Returns the attempt that succeeded.

        Every failed attempt followed by another one leaves an entry in
        ``retry_log``. Exhaustion raises ConnectionFailedError with ``attempts``.
        """
        max_attempts = max(1, int(max_attempts))
        for attempt in range(1, max_attempts + 1):
            try:
                self.connect()
                return attempt
            except ConnectionFailedError as exc:
                if attempt >= max_attempts:
                    logger.error(
                        "SSH connection failed after %s attempts",
                        attempt,
                        extra={"host": self._host_label(), "attempts": attempt, "error": str(exc)},
                    )
                    raise exc.with_attempts(attempt) from exc
                entry = {"attempt": attempt, "host": self._host_label(), "error": str(exc)}
                self.retry_log.append(entry)
                logger.warning("SSH connection retry", extra=entry)
                sleep(delay)
        raise AssertionError("unreachable")

    def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            client.close()

    # -- commands -----------------------------------------------------------

    def execute(self, command: str, *, tolerant: Optional[bool] = None) -> str:
        """Run ``command`` and return its stdout with trailing whitespace stripped.

        An empty string is a valid result. A non-zero exit raises
        CommandExecutionError unless the command is tolerant.
        """
        if self._client is None:
            raise ConnectionFailedError("SSH session is not connected", host=self._host_label())
        if tolerant is None:
            tolerant = is_tolerant_command(command)

        logger.info("SSH Command: Starting execution", extra={"host": self._host_label(), "command": command})
        started = time.monotonic()
        try:
            _stdin, stdout, stderr = self._client.exec_command(command, timeout=self.timeout)
            output = stdout.read().decode("utf-8", errors="replace")
            error_output = stderr.read().decode("utf-8", errors="replace")
            exit_status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, socket.timeout, OSError, EOFError) as exc:
            logger.error(
                "SSH Command: Execution failed",
                extra={"host": self._host_label(), "command": command, "error": str(exc)},
            )
            raise CommandExecutionError(command, host=self._host_label(), message=str(exc)) from exc

        if exit_status != 0 and not tolerant:
            logger.error(
                "SSH Command: Execution failed",
                extra={
                    "host": self._host_label(),
                    "command": command,
                    "exit_status": exit_status,
                    "error_output": output_preview(error_output),
                },
            )
            raise CommandExecutionError(
                command,
                output=output,
                error_output=error_output,
                exit_status=exit_status,
                host=self._host_label(),
            )

        output = output.rstrip()
        logger.info(
            "SSH Command: Execution completed successfully",
            extra={
                "host": self._host_label(),
                "command": command,
                "execution_time_ms": int((time.monotonic() - started) * 1000),
                "output_length": len(output),
                "output_preview": output_preview(output),
            },
        )
        if error_output.strip():
            logger.debug("SSH Command: stderr", extra={"command": command, "error_output": output_preview(error_output)})
        return output

    # -- teardown -----------------------------------------------------------

    def __enter__(self) -> "SshSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            self.close()
        except Exception:
            logger.exception("SSH client close failed", extra={"host": self._host_label()})
