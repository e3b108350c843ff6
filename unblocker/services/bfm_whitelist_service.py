"""Allow-list BFM DirectAdmin: учёт записей и их снятие по истечении TTL.

BFM не умеет временных записей, поэтому каждое добавление фиксируется в
``bfm_whitelist_entries``, а плановая задача снимает просроченные IP,
по одному SSH-соединению на хост.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..config import UnblockSettings, unblock_settings
from ..exceptions import FirewallError
from ..extensions import db
from ..firewall.commands import build_command
from ..models import BfmWhitelistEntry, Host, _as_aware, _utcnow
from ..ssh.keys import SshKeyManager, default_key_manager
from ..ssh.session import SshSession

logger = logging.getLogger(__name__)


def record_entry(host: Host, ip: str, ttl: int, *, notes: Optional[str] = None, now: Optional[datetime] = None) -> BfmWhitelistEntry:
    """Remember that ``ip`` sits in the BFM allow-list of ``host`` until ``now + ttl``.

    An active entry for the same host and IP is extended instead of duplicated.
    """
    now = now or _utcnow()
    expires_at = now + timedelta(seconds=int(ttl))
    entry = (
        BfmWhitelistEntry.query.filter_by(host_id=host.id, ip=ip, removed=False)
        .order_by(BfmWhitelistEntry.id.desc())
        .first()
    )
    if entry is None:
        entry = BfmWhitelistEntry(host_id=host.id, ip=ip, added_at=now, expires_at=expires_at, notes=notes)
        db.session.add(entry)
    else:
        entry.expires_at = max(expires_at, _as_aware(entry.expires_at))
    db.session.commit()
    logger.info("BFM whitelist entry recorded", extra={"ip": ip, "host_id": host.id, "ttl": int(ttl)})
    return entry


def record_from_unblock(host: Host, ip: str, unblock, *, notes: Optional[str] = None) -> Optional[BfmWhitelistEntry]:
    """Record the entry when the unblock step added ``ip`` to the BFM allow-list."""
    ttl = getattr(unblock, "bfm_whitelist_ttl", None)
    if ttl is None:
        return None
    return record_entry(host, ip, ttl, notes=notes)


def expired_entries(now: Optional[datetime] = None) -> List[BfmWhitelistEntry]:
    now = now or _utcnow()
    return (
        BfmWhitelistEntry.query.filter(BfmWhitelistEntry.removed.is_(False), BfmWhitelistEntry.expires_at <= now)
        .order_by(BfmWhitelistEntry.host_id.asc(), BfmWhitelistEntry.id.asc())
        .all()
    )


def remove_expired_entries(
    settings: Optional[UnblockSettings] = None,
    *,
    key_manager: Optional[SshKeyManager] = None,
    session_factory: Callable[..., SshSession] = SshSession,
    sleep: Callable[[float], Any] = time.sleep,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """Remove expired IPs from the BFM allow-list of every affected host.

    A host that cannot be reached keeps its entries; they are retried on the next run.
    """
    settings = settings or unblock_settings()
    now = now or _utcnow()
    entries = expired_entries(now)
    outcome = {"removed": 0, "failed": 0, "skipped": 0}
    if not entries:
        logger.info("No expired BFM whitelist entries found")
        return outcome

    by_host: "OrderedDict[int, List[BfmWhitelistEntry]]" = OrderedDict()
    for entry in entries:
        by_host.setdefault(entry.host_id, []).append(entry)

    manager = key_manager or default_key_manager(settings)
    for host_id, group in by_host.items():
        host = db.session.get(Host, host_id)
        if host is None or host.panel_type != "directadmin":
            logger.warning("Skipping BFM entries for non-DirectAdmin host", extra={"host_id": host_id, "entries": len(group)})
            outcome["skipped"] += len(group)
            continue

        try:
            with manager.credential_scope(host) as credential, session_factory(
                host, key_filename=credential.private_key_path, timeout=settings.ssh_timeout
            ) as session:
                session.connect_with_retry(settings.max_retry_attempts, settings.retry_delay, sleep=sleep)
                for entry in group:
                    session.execute(build_command("da_bfm_whitelist_remove", entry.ip), tolerant=False)
        except FirewallError as exc:
            logger.error(
                "Failed to remove expired BFM entries from host",
                extra={**host.to_safe_log_dict(), "entries": len(group), "error": str(exc)},
            )
            outcome["failed"] += len(group)
            continue

        for entry in group:
            entry.mark_removed(now)
        db.session.commit()
        outcome["removed"] += len(group)
        logger.info("Expired BFM entries removed", extra={**host.to_safe_log_dict(), "ips": [e.ip for e in group]})

    logger.info("Completed removal of expired BFM whitelist IPs", extra=outcome)
    return outcome
