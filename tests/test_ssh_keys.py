from __future__ import annotations

import os
import stat
from types import SimpleNamespace

import pytest
from cryptography.fernet import Fernet

from unblocker.exceptions import KeyInstallError, KeyProvisioningError
from unblocker.ssh.keys import SshKeyManager, generate_host_keys, generate_keypair, load_private_key


class _FakeInstaller:
    def __init__(self, fail_install=False, fail_remove=False):
        self.fail_install = fail_install
        self.fail_remove = fail_remove
        self.installed = []

    def install(self, host, public_key):
        if self.fail_install:
            raise RuntimeError("connection refused")
        self.installed.append(public_key)

    def remove(self, host, public_key):
        if self.fail_remove:
            raise RuntimeError("gone")
        if public_key in self.installed:
            self.installed.remove(public_key)


def _host():
    return SimpleNamespace(id=7, fqdn="srv1.example.com", port_ssh=22, panel_type="cpanel",
                           to_safe_log_dict=lambda: {"host_id": 7, "host_fqdn": "srv1.example.com"})


def test_generate_keypair_is_loadable():
    private_pem, public = generate_keypair("unblocker-test")
    assert public.startswith("ssh-ed25519 ")
    assert public.endswith(" unblocker-test")
    assert load_private_key(private_pem) is not None


def test_provision_writes_private_key_0600(tmp_path):
    installer = _FakeInstaller()
    manager = SshKeyManager(installer, str(tmp_path / "keys"))

    cred = manager.provision(_host())

    assert os.path.exists(cred.private_key_path)
    assert stat.S_IMODE(os.stat(cred.private_key_path).st_mode) == 0o600
    assert installer.installed == [cred.public_key]
    assert cred.public_key.endswith(cred.comment)


def test_provision_install_failure_removes_local_key(tmp_path):
    manager = SshKeyManager(_FakeInstaller(fail_install=True), str(tmp_path / "keys"))

    with pytest.raises(KeyInstallError):
        manager.provision(_host())

    assert os.listdir(tmp_path / "keys") == []


def test_revoke_is_idempotent(tmp_path):
    installer = _FakeInstaller()
    manager = SshKeyManager(installer, str(tmp_path / "keys"))
    cred = manager.provision(_host())

    assert manager.revoke(_host(), cred) is True
    assert manager.revoke(_host(), cred) is True

    assert installer.installed == []
    assert not os.path.exists(cred.private_key_path)


def test_revoke_never_raises_when_remote_fails(tmp_path):
    manager = SshKeyManager(_FakeInstaller(fail_remove=True), str(tmp_path / "keys"))
    cred = manager.provision(_host())

    assert manager.revoke(_host(), cred) is False
    assert cred.revoked is True
    assert not os.path.exists(cred.private_key_path)


def test_credential_scope_revokes_on_error(tmp_path):
    installer = _FakeInstaller()
    manager = SshKeyManager(installer, str(tmp_path / "keys"))

    with pytest.raises(ValueError):
        with manager.credential_scope(_host()):
            raise ValueError("boom")

    assert installer.installed == []


def test_sweep_stale_keys(tmp_path):
    keys_dir = tmp_path / "keys"
    keys_dir.mkdir()
    old = keys_dir / "key_old"
    fresh = keys_dir / "key_fresh"
    other = keys_dir / "README"
    for path in (old, fresh, other):
        path.write_text("x")
    os.utime(old, (1000, 1000))
    os.utime(fresh, (99_000, 99_000))
    os.utime(other, (1000, 1000))

    manager = SshKeyManager(_FakeInstaller(), str(keys_dir))
    deleted = manager.sweep_stale_keys(max_age=86400, now=100_000)

    assert deleted == 1
    assert not old.exists()
    assert fresh.exists() and other.exists()


def test_generate_host_keys_encrypts_private_key(app, host):
    public = generate_host_keys(host)

    assert host.hash_public == public
    assert host.has_keys
    assert "PRIVATE KEY" not in (host._hash or "")
    assert "PRIVATE KEY" in host.hash


def test_host_keys_require_encryption_key_outside_development(app, host, monkeypatch):
    monkeypatch.delenv("HOST_KEYS_ENCRYPTION_KEY", raising=False)
    monkeypatch.delenv("SECRET_KEY", raising=False)
    monkeypatch.delenv("FLASK_ENV", raising=False)
    monkeypatch.setitem(app.config, "DEBUG", False)
    monkeypatch.setitem(app.config, "TESTING", False)

    with pytest.raises(KeyProvisioningError):
        generate_host_keys(host)
    assert not host.has_keys


def test_dedicated_encryption_key_is_used(app, host, monkeypatch):
    monkeypatch.setenv("HOST_KEYS_ENCRYPTION_KEY", Fernet.generate_key().decode("utf-8"))
    monkeypatch.delenv("SECRET_KEY", raising=False)
    monkeypatch.setitem(app.config, "DEBUG", False)
    monkeypatch.setitem(app.config, "TESTING", False)

    generate_host_keys(host)

    assert "PRIVATE KEY" in host.hash
