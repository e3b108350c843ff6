"""Flask CLI commands."""

from __future__ import annotations

import json

import click
from flask.cli import with_appcontext
from flask_jwt_extended import create_access_token

from unblocker.audit.logger import verify_ledger_integrity
from unblocker.config import unblock_settings
from unblocker.exceptions import FirewallError
from unblocker.extensions import db
from unblocker.models import Host, User
from unblocker.orchestrator import CheckOrchestrator
from unblocker.services.bfm_whitelist_service import remove_expired_entries
from unblocker.ssh.keys import default_key_manager, generate_host_keys, load_private_key
from unblocker.ssh.session import SshSession


def _get_host(host_id: int) -> Host:
    host = db.session.get(Host, host_id)
    if host is None:
        raise click.ClickException(f"Host {host_id} not found")
    return host


@click.command("unblock-ip")
@click.argument("ip")
@click.argument("host_id", type=int)
@click.option("--user-id", type=int, required=True, help="Пользователь, от имени которого идёт проверка")
@click.option("--copy-user-id", type=int, default=None)
@click.option("--sync", is_flag=True, help="Выполнить сразу, без очереди Celery")
@with_appcontext
def unblock_ip(ip: str, host_id: int, user_id: int, copy_user_id, sync: bool) -> None:
    """Проверяет IP на хосте и снимает блокировку."""
    orchestrator = CheckOrchestrator()
    try:
        if sync:
            result = orchestrator.execute_check(ip, user_id, host_id, copy_user_id)
        else:
            result = orchestrator.run(ip, user_id, host_id, copy_user_id)
    except FirewallError as exc:
        raise click.ClickException(f"{exc.error_code}: {exc}") from exc
    click.echo(json.dumps(result, indent=2, ensure_ascii=False, default=str))


@click.command("generate-host-keys")
@click.argument("host_id", type=int)
@with_appcontext
def generate_host_keys_command(host_id: int) -> None:
    """Создаёт управляющую пару ключей хоста и печатает публичный ключ."""
    host = _get_host(host_id)
    public_key = generate_host_keys(host)
    db.session.commit()
    click.echo(f"Add this line to ~{host.admin}/.ssh/authorized_keys on {host.fqdn}:")
    click.echo(public_key)


@click.command("test-host-connection")
@click.argument("host_id", type=int)
@with_appcontext
def test_host_connection(host_id: int) -> None:
    """Проверяет SSH-доступ к хосту по управляющему ключу."""
    host = _get_host(host_id)
    if not host.has_keys:
        raise click.ClickException(f"Host {host.fqdn} has no management key; run generate-host-keys first")

    settings = unblock_settings()
    try:
        with SshSession(host, pkey=load_private_key(host.hash), timeout=settings.ssh_timeout) as session:
            session.connect_with_retry(settings.max_retry_attempts, settings.retry_delay)
            output = session.execute("csf -v", tolerant=True)
    except FirewallError as exc:
        raise click.ClickException(f"Connection to {host.fqdn} failed: {exc}") from exc
    click.echo(f"Connected to {host.fqdn}: {output or 'csf not found'}")


@click.command("cleanup-ssh-keys")
@click.option("--max-age", type=int, default=None, help="Возраст в секундах (по умолчанию SSH_KEY_MAX_AGE)")
@with_appcontext
def cleanup_ssh_keys_command(max_age) -> None:
    """Удаляет забытые временные ключи."""
    settings = unblock_settings()
    age = settings.ssh_key_max_age if max_age is None else max_age
    deleted = default_key_manager(settings).sweep_stale_keys(max_age=age)
    click.echo(f"Deleted {deleted} stale SSH keys.")


@click.command("remove-expired-bfm-whitelist")
@with_appcontext
def remove_expired_bfm_whitelist_command() -> None:
    """Снимает просроченные IP с allow-list BFM DirectAdmin."""
    outcome = remove_expired_entries()
    click.echo(
        f"Removed {outcome['removed']} expired BFM entries "
        f"({outcome['failed']} failed, {outcome['skipped']} skipped)."
    )


@click.command("create-admin")
@click.option("--email", prompt=True)
@click.option("--first-name", default="")
@click.option("--last-name", default="")
@with_appcontext
def create_admin(email: str, first_name: str, last_name: str) -> None:
    """Создаёт пользователя с правами администратора."""
    email = email.strip().lower()
    if User.query.filter_by(email=email).first():
        raise click.ClickException("User with the same email already exists")

    user = User(email=email, first_name=first_name, last_name=last_name, is_admin=True, is_active=True)
    db.session.add(user)
    db.session.commit()
    click.echo(f"Admin {email} created (id={user.id}).")


@click.command("issue-token")
@click.option("--email", required=True)
@with_appcontext
def issue_token(email: str) -> None:
    """Печатает JWT access-токен для API от имени пользователя."""
    user = User.query.filter_by(email=email.strip().lower()).first()
    if user is None or not user.is_active:
        raise click.ClickException(f"Active user {email} not found")
    click.echo(create_access_token(identity=str(user.id)))


@click.command("verify-audit-log")
@with_appcontext
def verify_audit_log() -> None:
    """Проверяет целостность цепочки журнала аудита."""
    ok, message = verify_ledger_integrity()
    if not ok:
        raise click.ClickException(message)
    click.echo(message)


COMMANDS = (
    unblock_ip,
    generate_host_keys_command,
    test_host_connection,
    cleanup_ssh_keys_command,
    remove_expired_bfm_whitelist_command,
    create_admin,
    issue_token,
    verify_audit_log,
)
