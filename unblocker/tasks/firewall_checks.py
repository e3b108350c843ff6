# -*- coding: utf-8 -*-
"""Фоновые задачи проверки firewall и рассылки отчётов."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from celery import shared_task

from unblocker.orchestrator import CheckOrchestrator
from unblocker.services.hq_whitelist_service import HqWhitelistService
from unblocker.services.notifications_service import send_report_notifications

logger = logging.getLogger(__name__)


@shared_task(name="unblocker.tasks.firewall_checks.process_firewall_check")
def process_firewall_check(ip: str, user_id: int, host_id: int, copy_user_id: Optional[int] = None) -> Dict[str, Any]:
    """Выполнить проверку IP на хосте (SSH, анализ, разблокировка, отчёт)."""
    logger.info("Запуск проверки firewall для %s на хосте %s", ip, host_id)
    return CheckOrchestrator().execute_check(ip, user_id, host_id, copy_user_id)


@shared_task(name="unblocker.tasks.firewall_checks.send_report_notification")
def send_report_notification(report_id: str, copy_user_id: Optional[int] = None) -> Dict[str, Any]:
    recipients = send_report_notifications(report_id, copy_user_id)
    return {"ok": bool(recipients), "report_id": report_id, "recipients": len(recipients)}


@shared_task(name="unblocker.tasks.firewall_checks.process_hq_whitelist")
def process_hq_whitelist(ip: str, user_id: Optional[int] = None) -> Dict[str, Any]:
    """Проверить IP в ModSecurity на HQ-хосте и временно добавить его в whitelist."""
    return HqWhitelistService().process(ip, user_id)
