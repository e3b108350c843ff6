from __future__ import annotations

from datetime import timedelta

from conftest import SshPlan
from unblocker.config import unblock_settings
from unblocker.extensions import celery_app, db
from unblocker.models import BfmWhitelistEntry, Host, _as_aware, _utcnow
from unblocker.orchestrator import CheckOrchestrator
from unblocker.services.bfm_whitelist_service import expired_entries, record_entry, remove_expired_entries

IP = "192.0.2.123"
OTHER_IP = "192.0.2.124"


def _expired(host, ip, hours=1):
    now = _utcnow()
    entry = BfmWhitelistEntry(host_id=host.id, ip=ip, added_at=now - timedelta(hours=hours + 2), expires_at=now - timedelta(hours=hours))
    db.session.add(entry)
    db.session.commit()
    return entry


def _remove(key_manager, plan):
    return remove_expired_entries(
        unblock_settings(), key_manager=key_manager, session_factory=plan.session_factory, sleep=lambda _s: None
    )


def test_record_entry_extends_active_entry(app, host):
    now = _utcnow()
    first = record_entry(host, IP, 3600, now=now)
    again = record_entry(host, IP, 7200, now=now)

    assert again.id == first.id
    assert BfmWhitelistEntry.query.count() == 1
    assert _as_aware(again.expires_at) == now + timedelta(seconds=7200)
    assert again.is_active


def test_record_entry_never_shortens_expiry(app, host):
    now = _utcnow()
    record_entry(host, IP, 7200, now=now)
    entry = record_entry(host, IP, 60, now=now)

    assert _as_aware(entry.expires_at) == now + timedelta(seconds=7200)


def test_removed_entry_is_not_reused(app, host):
    old = _expired(host, IP)
    old.mark_removed()
    db.session.commit()

    fresh = record_entry(host, IP, 3600)

    assert fresh.id != old.id
    assert BfmWhitelistEntry.query.count() == 2


def test_execute_check_records_bfm_whitelist_entry(app, granted, host, key_manager):
    plan = SshPlan([("ip_blacklist", [f"{IP} dateblocked=1733394815", ""])])
    orchestrator = CheckOrchestrator(
        unblock_settings(),
        key_manager=key_manager,
        session_factory=plan.session_factory,
        dispatch_notification=lambda *args: None,
        sleep=lambda _s: None,
    )

    result = orchestrator.execute_check(IP, granted.id, host.id)

    assert result["success"] is True
    assert plan.ran("ip_whitelist")
    entry = BfmWhitelistEntry.query.one()
    assert (entry.host_id, entry.ip, entry.removed) == (host.id, IP, False)
    assert entry.notes == "Added after BFM blacklist removal"
    assert entry.is_active


def test_expired_entries_only(app, host):
    record_entry(host, IP, 3600)
    stale = _expired(host, OTHER_IP)

    assert [e.id for e in expired_entries()] == [stale.id]


def test_remove_expired_uses_one_connection_per_host(app, host, key_manager):
    _expired(host, IP)
    _expired(host, OTHER_IP)
    record_entry(host, "192.0.2.200", 3600)
    plan = SshPlan()

    outcome = _remove(key_manager, plan)

    assert outcome == {"removed": 2, "failed": 0, "skipped": 0}
    assert len(plan.sessions) == 1
    assert len(plan.ran("ip_whitelist")) == 2
    assert BfmWhitelistEntry.query.filter_by(removed=True).count() == 2
    assert key_manager.revoked == ["c0"]


def test_remove_expired_skips_non_directadmin_hosts(app, key_manager):
    cpanel = Host(fqdn="cp.example.com", ip="192.0.2.20", admin="root", panel="cpanel")
    db.session.add(cpanel)
    db.session.commit()
    entry = _expired(cpanel, IP)
    plan = SshPlan()

    outcome = _remove(key_manager, plan)

    assert outcome == {"removed": 0, "failed": 0, "skipped": 1}
    assert plan.commands == []
    assert not db.session.get(BfmWhitelistEntry, entry.id).removed


def test_unreachable_host_keeps_entries_for_next_run(app, host, key_manager):
    entry = _expired(host, IP)
    plan = SshPlan(connect_failures=10)

    outcome = _remove(key_manager, plan)

    assert outcome == {"removed": 0, "failed": 1, "skipped": 0}
    assert not db.session.get(BfmWhitelistEntry, entry.id).removed
    assert key_manager.revoked == ["c0"]


def test_cli_reports_nothing_to_remove(app):
    result = app.test_cli_runner().invoke(args=["remove-expired-bfm-whitelist"])

    assert result.exit_code == 0
    assert "Removed 0 expired BFM entries (0 failed, 0 skipped)." in result.output


def test_expiry_job_is_scheduled(app):
    entry = celery_app.conf.beat_schedule["remove-expired-bfm-whitelist-hourly"]
    assert entry["task"] == "unblocker.tasks.maintenance.remove_expired_bfm_whitelist"
    assert entry["schedule"] == 3600
