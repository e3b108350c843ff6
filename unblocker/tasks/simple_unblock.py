# -*- coding: utf-8 -*-
"""Фоновая задача анонимной разблокировки (simple mode)."""

from __future__ import annotations

import logging
from typing import Any, Dict

from celery import shared_task

from unblocker.simple_unblock.service import SimpleUnblockProcessor

logger = logging.getLogger(__name__)


@shared_task(name="unblocker.tasks.simple_unblock.process_simple_unblock")
def process_simple_unblock(ip: str, domain: str, email: str, host_id: int) -> Dict[str, Any]:
    """Проверить IP на сервере домена и разблокировать при совпадении."""
    logger.info("Запуск simple unblock для %s (%s) на хосте %s", ip, domain, host_id)
    return SimpleUnblockProcessor().process(ip, domain, email, host_id)
