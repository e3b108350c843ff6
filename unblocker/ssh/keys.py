"""Ephemeral SSH key pairs: generate, install, revoke, sweep.

Every check gets its own Ed25519 pair. The public half is appended to the
host's ``authorized_keys`` through the host's management key and removed
again after the check; the private half lives in a 0600 file under
``UNBLOCK_SSH_KEYS_DIR`` for the duration of the operation only.
"""

from __future__ import annotations

import io
import logging
import os
import shlex
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional, Protocol, Tuple

import paramiko
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from ..exceptions import KeyGenerationError, KeyInstallError
from .session import SshSession

logger = logging.getLogger(__name__)

KEY_FILE_PREFIX = "key_"
COMMENT_PREFIX = "unblocker-"


def generate_keypair(comment: str) -> Tuple[str, str]:
    """Return ``(private_openssh_pem, public_line)`` for a fresh Ed25519 key."""
    key = Ed25519PrivateKey.generate()
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public = key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    ).decode("ascii")
    return private_pem, f"{public} {comment}"


def load_private_key(pem: str) -> paramiko.PKey:
    """Load a stored management key (Ed25519, ECDSA or RSA) for paramiko."""
    last_error: Optional[Exception] = None
    for key_class in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
        try:
            return key_class.from_private_key(io.StringIO(pem))
        except (paramiko.SSHException, ValueError) as exc:
            last_error = exc
    raise paramiko.SSHException(f"Unsupported private key: {last_error}")


@dataclass
class SshCredential:
    id: str
    host_id: Optional[int]
    private_key_path: str
    public_key: str
    revoked: bool = False

    @property
    def comment(self) -> str:
        return f"{COMMENT_PREFIX}{self.id}"


class AuthorizedKeysInstaller(Protocol):
    def install(self, host, public_key: str) -> None: ...

    def remove(self, host, public_key: str) -> None: ...


class SshAuthorizedKeysInstaller:
    """Manage ``~/.ssh/authorized_keys`` over the host's stored management key."""

    def __init__(self, timeout: int = 30, session_factory=SshSession) -> None:
        self.timeout = timeout
        self._session_factory = session_factory

    def _session(self, host) -> SshSession:
        pem = host.hash
        if not pem:
            raise KeyInstallError(f"Host {host.fqdn} has no management key", context=host.to_safe_log_dict())
        return self._session_factory(host, pkey=load_private_key(pem), timeout=self.timeout)

    def install(self, host, public_key: str) -> None:
        command = (
            "umask 077 && mkdir -p ~/.ssh && "
            f"echo {shlex.quote(public_key)} >> ~/.ssh/authorized_keys"
        )
        with self._session(host) as session:
            session.connect()
            session.execute(command, tolerant=False)

    def remove(self, host, public_key: str) -> None:
        comment = public_key.rsplit(" ", 1)[-1]
        # Comments are "unblocker-<hex>", safe inside a sed address.
        command = f"touch ~/.ssh/authorized_keys && sed -i '/ {comment}$/d' ~/.ssh/authorized_keys"
        with self._session(host) as session:
            session.connect()
            session.execute(command, tolerant=False)


class SshKeyManager:
    """Owns the lifecycle of per-operation credentials."""

    def __init__(self, installer: AuthorizedKeysInstaller, keys_dir: str) -> None:
        self.installer = installer
        self.keys_dir = keys_dir

    def _ensure_dir(self) -> None:
        os.makedirs(self.keys_dir, mode=0o700, exist_ok=True)

    def _write_private_key(self, path: str, pem: str) -> None:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="ascii") as stream:
            stream.write(pem)

    @staticmethod
    def _remove_file(path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass

    def provision(self, host) -> SshCredential:
        """Generate and install a key pair for ``host``.

        Atomic: when the install fails the local private key is deleted and
        the error propagates as KeyInstallError.
        """
        cred_id = uuid.uuid4().hex
        path = os.path.join(self.keys_dir, f"{KEY_FILE_PREFIX}{cred_id}")
        try:
            self._ensure_dir()
            private_pem, public_key = generate_keypair(f"{COMMENT_PREFIX}{cred_id}")
            self._write_private_key(path, private_pem)
        except (OSError, ValueError) as exc:
            self._remove_file(path)
            raise KeyGenerationError(f"SSH key generation failed: {exc}", context=host.to_safe_log_dict()) from exc

        credential = SshCredential(id=cred_id, host_id=host.id, private_key_path=path, public_key=public_key)
        try:
            self.installer.install(host, public_key)
        except KeyInstallError:
            self._remove_file(path)
            raise
        except Exception as exc:
            self._remove_file(path)
            raise KeyInstallError(f"SSH key install failed: {exc}", context=host.to_safe_log_dict()) from exc

        logger.info("SSH key provisioned", extra={**host.to_safe_log_dict(), "credential": credential.comment})
        return credential

    def revoke(self, host, credential: SshCredential) -> bool:
        """Remove the public key remotely and the private key locally.

        Idempotent and never raises; returns False when the remote removal failed.
        """
        if credential.revoked:
            return True
        remote_ok = True
        try:
            self.installer.remove(host, credential.public_key)
        except Exception:
            remote_ok = False
            logger.exception("SSH key revoke failed on host", extra={**host.to_safe_log_dict(), "credential": credential.comment})
        finally:
            try:
                self._remove_file(credential.private_key_path)
            except OSError:
                logger.exception("Could not delete local SSH key", extra={"credential": credential.comment})
            credential.revoked = True
        return remote_ok

    @contextmanager
    def credential_scope(self, host) -> Iterator[SshCredential]:
        credential = self.provision(host)
        try:
            yield credential
        finally:
            self.revoke(host, credential)

    def sweep_stale_keys(self, max_age: int = 86400, now: Optional[float] = None) -> int:
        """Delete local key files older than ``max_age`` seconds. Returns the count."""
        if not os.path.isdir(self.keys_dir):
            return 0
        now = time.time() if now is None else now
        deleted = 0
        for name in os.listdir(self.keys_dir):
            if not name.startswith(KEY_FILE_PREFIX):
                continue
            path = os.path.join(self.keys_dir, name)
            try:
                if os.path.isfile(path) and now - os.path.getmtime(path) > max_age:
                    os.remove(path)
                    deleted += 1
            except FileNotFoundError:
                continue
        logger.info("SSH keys cleanup: deleted %s old temporary keys", deleted)
        return deleted


def generate_host_keys(host) -> str:
    """Create a management key pair for ``host``; returns the public line to install."""
    private_pem, public_key = generate_keypair(f"unblocker-host-{host.id}")
    host.hash = private_pem
    host.hash_public = public_key
    return public_key


def default_key_manager(settings) -> SshKeyManager:
    installer = SshAuthorizedKeysInstaller(timeout=settings.ssh_timeout)
    return SshKeyManager(installer, settings.ssh_keys_dir)
