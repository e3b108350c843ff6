from __future__ import annotations

from datetime import timedelta

import pytest

from unblocker.exceptions import ModelNotFoundError, ReportExpiredError
from unblocker.extensions import db
from unblocker.models import Report, User, _utcnow
from unblocker.services.notifications_service import render, send_report_notifications
from unblocker.services.reports_service import anonymous_user, create_report, get_readable_report


def _report(user, host, **kwargs):
    return create_report(user.id, host.id, "192.0.2.1", {"csf": "x"}, {"was_blocked": False, **kwargs})


def test_report_expiry_boundary(app, user, host):
    ttl = app.config["UNBLOCK_REPORT_EXPIRATION"]
    report = _report(user, host)
    now = _utcnow()

    report.created_at = now - timedelta(seconds=ttl + 1)
    db.session.commit()
    with pytest.raises(ReportExpiredError):
        get_readable_report(report.id, now=now)

    report.created_at = now - timedelta(seconds=ttl)
    db.session.commit()
    assert get_readable_report(report.id, now=now).id == report.id


def test_readable_report_stamps_last_read(app, user, host):
    report = _report(user, host)
    assert report.last_read is None
    get_readable_report(report.id)
    assert db.session.get(Report, report.id).last_read is not None


def test_unknown_report(app):
    with pytest.raises(ModelNotFoundError):
        get_readable_report("missing")


def test_report_route(client, app, user, host):
    report = _report(user, host)
    report_id = report.id

    resp = client.get(f"/report/{report_id}")
    assert resp.status_code == 200
    assert resp.get_json()["id"] == report_id
    assert resp.headers["X-Content-Type-Options"] == "nosniff"

    assert client.get("/report/nope").status_code == 404

    report = db.session.get(Report, report_id)
    report.created_at = _utcnow() - timedelta(seconds=app.config["UNBLOCK_REPORT_EXPIRATION"] + 60)
    db.session.commit()
    resp = client.get(f"/report/{report_id}")
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "report_expired"


def test_notifications_user_admin_and_copy(app, user, host, notifier):
    copy_user = User(email="copy@example.com")
    db.session.add(copy_user)
    db.session.commit()
    report = _report(user, host)

    sent = send_report_notifications(report.id, copy_user.id)

    assert sent == ["user@example.com", "admin@example.com", "copy@example.com"]
    assert notifier.templates() == ["report_user", "report_admin", "report_copy"]


def test_notifications_are_deduplicated(app, host, notifier):
    admin = User(email="admin@example.com", is_admin=True)
    db.session.add(admin)
    db.session.commit()
    report = _report(admin, host)

    sent = send_report_notifications(report.id, admin.id)

    assert sent == ["admin@example.com"]
    assert notifier.templates() == ["report_user"]


def test_notifications_fall_back_to_first_admin(app, user, host, notifier):
    app.config["UNBLOCK_ADMIN_EMAIL"] = ""
    db.session.add(User(email="boss@example.com", is_admin=True))
    db.session.commit()

    send_report_notifications(_report(user, host).id)

    assert notifier.to("boss@example.com") == ["report_admin"]


def test_missing_report_sends_nothing(app, notifier):
    assert send_report_notifications("nope") == []
    assert notifier.sent == []


def test_templates_render_links(app):
    app.config["REPORT_BASE_URL"] = "https://unblock.example.com"
    subject, body = render(
        "report_user",
        {"report_id": "abc", "ip": "192.0.2.1", "host": "srv1", "analysis": {"unblock_performed": True, "unblock_status": "success"}},
    )
    assert "192.0.2.1" in subject
    assert "has been unblocked" in body
    assert "https://unblock.example.com/report/abc" in body
    with pytest.raises(ValueError):
        render("nope", {})


def test_anonymous_user_is_reused(app):
    first = anonymous_user()
    assert anonymous_user().id == first.id
    assert first.email == "anonymous@system.local"
