"""Audit trail for checks and unblocks (best-effort, hash-chained)."""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Dict, Optional, Tuple

from flask import has_request_context, request
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import AuditLog

logger = logging.getLogger(__name__)

GENESIS_HASH = "GENESIS_BLOCK_0000000000000000"


def generate_hash(data_dict: dict, prev_hash: str) -> str:
    """SHA-256 от данных записи и хеша предыдущей записи."""
    data_string = json.dumps(data_dict, sort_keys=True, ensure_ascii=False, default=str)
    raw_string = f"{prev_hash}|{data_string}"
    return hashlib.sha256(raw_string.encode("utf-8")).hexdigest()


def _last_signature() -> str:
    last = AuditLog.query.order_by(AuditLog.id.desc()).first()
    if last and last.payload_json:
        try:
            return json.loads(last.payload_json).get("_crypto_signature", GENESIS_HASH)
        except ValueError:
            return GENESIS_HASH
    return GENESIS_HASH


def log_action(action: str, payload: Optional[Dict[str, Any]] = None, *, actor: Optional[str] = None) -> None:
    """Записать действие в журнал аудита.

    Best-effort: ошибка записи логируется и не ломает основную операцию.
    Каждая запись подписывается вместе с подписью предыдущей.
    """
    try:
        ip = None
        if has_request_context():
            ip = request.remote_addr
        prev_hash = _last_signature()
        data_to_hash = {"actor": str(actor), "ip": str(ip), "action": action, "payload": payload or {}}
        final_payload = dict(payload or {})
        final_payload["_crypto_signature"] = generate_hash(data_to_hash, prev_hash)
        final_payload["_prev_hash"] = prev_hash
        if ip:
            final_payload["_ip"] = ip

        db.session.add(
            AuditLog(actor=actor, action=action, payload_json=json.dumps(final_payload, ensure_ascii=False, default=str))
        )
        db.session.commit()
    except SQLAlchemyError:
        logger.exception("Audit log write failed", extra={"action": action})
        db.session.rollback()


def verify_ledger_integrity() -> Tuple[bool, str]:
    """Проверить, что цепочка записей не изменена и не порвана."""
    prev_hash = GENESIS_HASH
    for row in AuditLog.query.order_by(AuditLog.id.asc()).all():
        try:
            payload = json.loads(row.payload_json or "{}")
        except ValueError:
            return False, f"Unreadable payload on ID {row.id}"
        if payload.get("_prev_hash", prev_hash) != prev_hash:
            return False, f"Chain broken on ID {row.id}"
        clean = {k: v for k, v in payload.items() if k not in ("_crypto_signature", "_prev_hash", "_ip")}
        data_to_hash = {"actor": str(row.actor), "ip": str(payload.get("_ip")), "action": row.action, "payload": clean}
        if generate_hash(data_to_hash, prev_hash) != payload.get("_crypto_signature"):
            return False, f"Signature mismatch on ID {row.id}"
        prev_hash = payload["_crypto_signature"]
    return True, "Ledger intact"
