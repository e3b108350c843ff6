from __future__ import annotations

import json

from unblocker.audit.logger import GENESIS_HASH, log_action, verify_ledger_integrity
from unblocker.extensions import db
from unblocker.models import AuditLog


def test_entries_are_chained(app):
    log_action("firewall_check", {"ip": "192.0.2.1"}, actor="1")
    log_action("firewall_check", {"ip": "192.0.2.2"}, actor="1")

    first, second = AuditLog.query.order_by(AuditLog.id.asc()).all()
    first_payload = json.loads(first.payload_json)
    second_payload = json.loads(second.payload_json)
    assert first_payload["_prev_hash"] == GENESIS_HASH
    assert second_payload["_prev_hash"] == first_payload["_crypto_signature"]
    assert verify_ledger_integrity() == (True, "Ledger intact")


def test_tampering_is_detected(app):
    log_action("simple_unblock_success", {"ip": "192.0.2.1"}, actor="anonymous")
    log_action("simple_unblock_no_match", {"ip": "192.0.2.2"}, actor="anonymous")

    row = AuditLog.query.order_by(AuditLog.id.asc()).first()
    payload = json.loads(row.payload_json)
    payload["ip"] = "203.0.113.1"
    row.payload_json = json.dumps(payload)
    db.session.commit()

    ok, message = verify_ledger_integrity()
    assert ok is False
    assert message == f"Signature mismatch on ID {row.id}"


def test_request_ip_is_recorded(app):
    with app.test_request_context("/", environ_base={"REMOTE_ADDR": "198.51.100.7"}):
        log_action("firewall_check", {}, actor="2")

    payload = json.loads(AuditLog.query.one().payload_json)
    assert payload["_ip"] == "198.51.100.7"
    assert verify_ledger_integrity()[0] is True
