from __future__ import annotations

import logging
from types import SimpleNamespace

import pytest

from conftest import SshPlan
from unblocker.exceptions import CommandExecutionError, ConnectionFailedError, SshAuthenticationError
from unblocker.ssh.session import SshSession, is_tolerant_command, output_preview


def _host():
    return SimpleNamespace(fqdn="srv1.example.com", address="192.0.2.10", port_ssh=22, admin="root")


@pytest.mark.parametrize(
    "length, expected_len",
    [(0, 0), (200, 200), (201, 203)],
)
def test_output_preview_lengths(length, expected_len):
    s = "x" * length
    preview = output_preview(s)
    assert len(preview) == expected_len
    if length > 200:
        assert preview == s[:200] + "..."
    else:
        assert preview == s


def test_tolerant_commands_are_grep_lookups():
    assert is_tolerant_command("cat /etc/csf/csf.deny | grep 1.2.3.4 || true")
    assert not is_tolerant_command("csf -dr 1.2.3.4")


def test_execute_logs_start_and_completion(caplog):
    plan = SshPlan([("csf -g", "y" * 250)])
    caplog.set_level(logging.INFO, logger="unblocker.ssh.session")

    with plan.session_factory(_host()) as session:
        session.connect()
        out = session.execute("csf -g 192.0.2.1")

    assert out == "y" * 250
    started = [r for r in caplog.records if r.getMessage() == "SSH Command: Starting execution"]
    done = [r for r in caplog.records if r.getMessage() == "SSH Command: Execution completed successfully"]
    assert started and started[0].command == "csf -g 192.0.2.1"
    assert done[0].output_length == 250
    assert len(done[0].output_preview) == 203


def test_execute_strips_trailing_whitespace_and_allows_empty():
    plan = SshPlan([("grep", "")])
    with plan.session_factory(_host()) as session:
        session.connect()
        assert session.execute("cat /etc/csf/csf.deny | grep 1.2.3.4 || true") == ""


def test_non_zero_exit_raises_command_error():
    plan = SshPlan([("csf -dr", "error: not found", 1)])
    with plan.session_factory(_host()) as session:
        session.connect()
        with pytest.raises(CommandExecutionError) as ei:
            session.execute("csf -dr 192.0.2.1")
    assert ei.value.exit_status == 1
    assert ei.value.output == "error: not found"


def test_tolerant_command_ignores_exit_status():
    plan = SshPlan([("grep", "", 1)])
    with plan.session_factory(_host()) as session:
        session.connect()
        assert session.execute("cat /var/log/maillog | grep 1.2.3.4 || true") == ""


def test_retry_two_failures_then_success():
    plan = SshPlan(connect_failures=2)
    sleeps = []
    session = plan.session_factory(_host())

    attempt = session.connect_with_retry(3, 5, sleep=sleeps.append)

    assert attempt == 3
    assert len(session.retry_log) == 2
    assert [e["attempt"] for e in session.retry_log] == [1, 2]
    assert sleeps == [5, 5]


def test_retry_exhausted_raises_with_attempts():
    plan = SshPlan(connect_failures=3)
    session = plan.session_factory(_host())

    with pytest.raises(ConnectionFailedError) as ei:
        session.connect_with_retry(3, 0, sleep=lambda _s: None)

    assert ei.value.attempts == 3
    assert plan.connect_attempts == 3


def test_authentication_failure_is_distinguishable():
    plan = SshPlan(auth_fail=True)
    session = plan.session_factory(_host())
    with pytest.raises(SshAuthenticationError) as ei:
        session.connect()
    assert "Permission denied (publickey)" in str(ei.value)


def test_client_closed_on_error_without_masking_it():
    plan = SshPlan([("csf -dr", "", 2)])
    with pytest.raises(CommandExecutionError):
        with plan.session_factory(_host()) as session:
            session.connect()
            session.execute("csf -dr 192.0.2.1")

    assert plan.closed == 1


def test_execute_requires_connection():
    session = SshSession(_host(), client_factory=SshPlan().client)
    with pytest.raises(ConnectionFailedError):
        session.execute("csf -g 1.2.3.4")
