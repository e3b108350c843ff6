"""Плановое обслуживание: забытые временные SSH-ключи и просроченные записи BFM."""

from __future__ import annotations

from typing import Optional

from celery import shared_task

from unblocker.config import unblock_settings
from unblocker.services.bfm_whitelist_service import remove_expired_entries
from unblocker.ssh.keys import default_key_manager


@shared_task(name="unblocker.tasks.maintenance.cleanup_ssh_keys")
def cleanup_ssh_keys(max_age: Optional[int] = None) -> dict:
    settings = unblock_settings()
    age = settings.ssh_key_max_age if max_age is None else int(max_age)
    deleted = default_key_manager(settings).sweep_stale_keys(max_age=age)
    return {"ok": True, "deleted": deleted}


@shared_task(name="unblocker.tasks.maintenance.remove_expired_bfm_whitelist")
def remove_expired_bfm_whitelist() -> dict:
    """Снять с allow-list BFM все IP, у которых истёк TTL."""
    return {"ok": True, **remove_expired_entries()}
