"""Celery-задачи приложения."""

from unblocker.tasks import firewall_checks as firewall_checks_tasks  # noqa: F401
from unblocker.tasks import maintenance as maintenance_tasks  # noqa: F401
from unblocker.tasks import simple_unblock as simple_unblock_tasks  # noqa: F401
