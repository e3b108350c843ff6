"""Celery worker entrypoint.

Запуск:
    celery -A celery_worker.celery worker --loglevel=info
    celery -A celery_worker.celery beat --loglevel=info
"""

from unblocker import create_app
from unblocker.extensions import celery_app

flask_app = create_app()
flask_app.app_context().push()

celery = celery_app
celery.autodiscover_tasks(["unblocker"])

import unblocker.tasks  # noqa: E402,F401
