from __future__ import annotations

from sqlalchemy import select

from unblocker.events import HONEYPOT_TRIGGERED, OTP_FAILED, OTP_SENT, OTP_VERIFIED, REQUEST_PROCESSED, EventBus, publish
from unblocker.extensions import db
from unblocker.models import AbuseIncident, EmailReputation, IpReputation, hash_email
from unblocker.simple_unblock.listeners import email_score, ip_score, track_email_reputation, track_ip_reputation


def test_failing_handler_does_not_stop_others():
    seen = []
    rollbacks = []
    bus = EventBus(on_error=lambda: rollbacks.append(True))

    def broken(_payload):
        raise RuntimeError("boom")

    bus.subscribe("x", broken)
    bus.subscribe("x", seen.append)

    assert bus.publish("x", {"a": 1}) == 1
    assert seen == [{"a": 1, "event": "x"}]
    assert rollbacks == [True]


def test_failing_error_hook_does_not_escape_publish(caplog):
    seen = []

    def broken_rollback():
        raise RuntimeError("connection lost")

    def broken(_payload):
        raise RuntimeError("boom")

    bus = EventBus(on_error=broken_rollback)
    bus.subscribe("x", broken)
    bus.subscribe("x", seen.append)

    assert bus.publish("x") == 1
    assert seen == [{"event": "x"}]
    assert "Event error hook failed" in caplog.text


def test_publish_without_handlers():
    assert EventBus().publish("nothing") == 0


def test_scores():
    assert email_score(0, 0, 0) == 100
    assert email_score(10, 5, 5) == 60
    assert email_score(4, 4, 0) == 100
    assert ip_score(4, 1) == 75
    assert ip_score(0, 0) == 100


def test_honeypot_incident_and_penalty(app):
    publish(HONEYPOT_TRIGGERED, {"ip": "198.51.100.7", "email": "bot@example.net", "domain": "example.org"})

    incident = AbuseIncident.query.one()
    assert incident.severity == "medium"
    assert incident.email_hash == hash_email("bot@example.net")
    assert incident.details["email"] == "REDACTED"
    assert IpReputation.query.filter_by(ip="198.51.100.7").one().reputation_score == 80


def test_repeated_otp_failures_escalate(app):
    for _ in range(4):
        publish(OTP_FAILED, {"email": "v@example.net", "ip": "198.51.100.7", "reason": "Invalid verification code"})

    severities = [i.severity for i in AbuseIncident.query.order_by(AbuseIncident.id.asc())]
    assert severities == ["medium", "medium", "medium", "high"]
    reputation = EmailReputation.query.one()
    assert reputation.failed_requests == 4
    assert reputation.email_domain == "example.net"


def test_reputation_never_negative(app):
    for _ in range(8):
        publish(HONEYPOT_TRIGGERED, {"ip": "198.51.100.9"})
    assert IpReputation.query.filter_by(ip="198.51.100.9").one().reputation_score == 0


def test_request_processed_tracks_ip(app):
    publish(REQUEST_PROCESSED, {"ip": "198.51.100.7", "success": True})
    publish(REQUEST_PROCESSED, {"ip": "198.51.100.7", "success": False})

    row = IpReputation.query.one()
    assert (row.total_requests, row.failed_requests, row.reputation_score) == (2, 1, 50)
    assert row.subnet == "198.51.100.0/24"


def test_incident_resolve_is_sticky(app):
    publish(HONEYPOT_TRIGGERED, {"ip": "198.51.100.7"})
    incident = AbuseIncident.query.one()
    assert not incident.is_resolved

    incident.resolve()
    first = incident.resolved_at
    incident.resolve()
    assert incident.is_resolved
    assert incident.resolved_at == first


def test_email_tracking_counts_every_worker(app):
    publish(OTP_SENT, {"email": "v@example.net"})
    stale = EmailReputation.query.one()
    assert stale.total_requests == 1

    # another worker with its own session counts the same address
    with app.app_context():
        track_email_reputation({"email": "v@example.net", "event": OTP_SENT})

    track_email_reputation({"email": "v@example.net", "event": OTP_VERIFIED})

    total, verified, score = db.session.execute(
        select(EmailReputation.total_requests, EmailReputation.verified_requests, EmailReputation.reputation_score)
    ).one()
    assert (total, verified) == (3, 1)
    assert score == email_score(3, 1, 0)


def test_ip_tracking_and_penalties_count_every_worker(app):
    publish(REQUEST_PROCESSED, {"ip": "198.51.100.7", "success": True})
    stale = IpReputation.query.one()
    assert stale.total_requests == 1

    with app.app_context():
        track_ip_reputation({"ip": "198.51.100.7", "success": False})
        publish(HONEYPOT_TRIGGERED, {"ip": "198.51.100.7"})

    publish(HONEYPOT_TRIGGERED, {"ip": "198.51.100.7"})

    total, failed, score = db.session.execute(
        select(IpReputation.total_requests, IpReputation.failed_requests, IpReputation.reputation_score)
    ).one()
    assert (total, failed) == (2, 1)
    assert score == ip_score(2, 1) - 40
