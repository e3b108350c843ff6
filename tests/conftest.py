import socket
from contextlib import contextmanager

import paramiko
import pytest

from unblocker import create_app
from unblocker.config import TestingConfig
from unblocker.extensions import db
from unblocker.models import Host, Hosting, User, UserHostPermission
from unblocker.security.rate_limit import COUNTER_STORE_EXTENSION, SqlCounterStore
from unblocker.services.notifications_service import NOTIFIER_EXTENSION
from unblocker.ssh.keys import SshCredential
from unblocker.ssh.session import SshSession


class _FakeNotifier:
    """Collects notifications instead of sending mail."""

    def __init__(self):
        self.sent = []

    def send(self, template, recipient, data):
        self.sent.append((template, recipient, data))
        return True

    def templates(self):
        return [template for template, _recipient, _data in self.sent]

    def to(self, recipient):
        return [template for template, rcpt, _data in self.sent if rcpt == recipient]


class _FakeStream:
    def __init__(self, data, status):
        self._data = data.encode("utf-8")
        self.channel = self
        self._status = status

    def read(self):
        return self._data

    def recv_exit_status(self):
        return self._status


class _FakeSSHClient:
    def __init__(self, plan):
        self.plan = plan

    def set_missing_host_key_policy(self, policy):
        pass

    def connect(self, **kwargs):
        self.plan.connect_attempts += 1
        if self.plan.auth_fail:
            raise paramiko.AuthenticationException("Authentication failed.")
        if self.plan.connect_failures > 0:
            self.plan.connect_failures -= 1
            raise socket.timeout("timed out")

    def exec_command(self, command, timeout=None):
        self.plan.commands.append(command)
        stdout, status = self.plan.answer(command)
        return None, _FakeStream(stdout, status), _FakeStream("", status)

    def close(self):
        self.plan.closed += 1


class SshPlan:
    """Scripted remote host.

    ``responses`` is a list of ``(needle, stdout)`` or ``(needle, stdout, exit_status)``;
    the first needle contained in the command wins. ``stdout`` may be a list,
    consumed one item per call (the last item repeats).
    """

    def __init__(self, responses=None, connect_failures=0, auth_fail=False):
        self.responses = [tuple(r) + ((0,) if len(r) == 2 else ()) for r in (responses or [])]
        self.connect_failures = connect_failures
        self.auth_fail = auth_fail
        self.connect_attempts = 0
        self.commands = []
        self.closed = 0
        self.sessions = []

    def answer(self, command):
        for needle, stdout, status in self.responses:
            if needle in command:
                if isinstance(stdout, list):
                    return (stdout.pop(0) if len(stdout) > 1 else stdout[0]), status
                return stdout, status
        return "", 0

    def client(self):
        return _FakeSSHClient(self)

    def session_factory(self, host, **kwargs):
        session = SshSession(host, client_factory=self.client, **kwargs)
        self.sessions.append(session)
        return session

    def ran(self, needle):
        return [c for c in self.commands if needle in c]


class _FakeKeyManager:
    def __init__(self, tmp_path, fail_with=None):
        self.tmp_path = tmp_path
        self.fail_with = fail_with
        self.provisioned = []
        self.revoked = []

    def provision(self, host):
        if self.fail_with is not None:
            raise self.fail_with
        cred = SshCredential(
            id=f"c{len(self.provisioned)}",
            host_id=host.id,
            private_key_path=str(self.tmp_path / f"key_c{len(self.provisioned)}"),
            public_key="ssh-ed25519 AAAA unblocker-c",
        )
        self.provisioned.append(cred)
        return cred

    def revoke(self, host, credential):
        self.revoked.append(credential.id)
        credential.revoked = True
        return True

    @contextmanager
    def credential_scope(self, host):
        credential = self.provision(host)
        try:
            yield credential
        finally:
            self.revoke(host, credential)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    # БД и ключи в tmp
    monkeypatch.setattr(TestingConfig, "SQLALCHEMY_DATABASE_URI", f"sqlite:///{tmp_path / 'test.db'}")
    monkeypatch.setattr(TestingConfig, "UNBLOCK_SSH_KEYS_DIR", str(tmp_path / "ssh"))

    a = create_app(TestingConfig)
    a.extensions[NOTIFIER_EXTENSION] = _FakeNotifier()
    a.extensions[COUNTER_STORE_EXTENSION] = SqlCounterStore()

    with a.app_context():
        yield a
        db.session.remove()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def notifier(app):
    return app.extensions[NOTIFIER_EXTENSION]


@pytest.fixture()
def key_manager(tmp_path):
    return _FakeKeyManager(tmp_path)


@pytest.fixture()
def make_key_manager(tmp_path):
    def _make(fail_with=None):
        return _FakeKeyManager(tmp_path, fail_with=fail_with)

    return _make


@pytest.fixture()
def user(app):
    u = User(email="user@example.com", first_name="Test", last_name="User")
    db.session.add(u)
    db.session.commit()
    return u


@pytest.fixture()
def host(app):
    h = Host(fqdn="srv1.example.com", ip="192.0.2.10", port_ssh=22, admin="root", panel="directadmin")
    db.session.add(h)
    db.session.commit()
    return h


@pytest.fixture()
def granted(user, host):
    db.session.add(UserHostPermission(user_id=user.id, host_id=host.id, is_active=True))
    db.session.commit()
    return user


@pytest.fixture()
def hosting(host):
    row = Hosting(host_id=host.id, domain="example.org", username="exampleorg")
    db.session.add(row)
    db.session.commit()
    return row
