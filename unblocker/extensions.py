"""
Инициализация расширений Flask.

Объекты расширений создаются здесь без привязки к приложению, чтобы
избежать циклических импортов: create_app() привязывает их позже.
"""

from __future__ import annotations

from celery import Celery
from flask import Flask
from flask_jwt_extended import JWTManager
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

# Celery-приложение инициализируется через init_celery(app).
celery_app = Celery(__name__)
jwt = JWTManager()


def init_celery(app: Flask) -> Celery:
    """Привязать Celery к конфигу Flask-приложения."""
    celery_app.conf.update(
        broker_url=app.config["CELERY_BROKER_URL"],
        result_backend=app.config["CELERY_RESULT_BACKEND"],
        task_ignore_result=True,
        task_always_eager=bool(app.config.get("CELERY_TASK_ALWAYS_EAGER", False)),
        broker_connection_retry_on_startup=True,
        beat_schedule={
            "cleanup-ssh-keys-daily": {
                "task": "unblocker.tasks.maintenance.cleanup_ssh_keys",
                "schedule": 24 * 3600,
            },
            "remove-expired-bfm-whitelist-hourly": {
                "task": "unblocker.tasks.maintenance.remove_expired_bfm_whitelist",
                "schedule": 3600,
            },
        },
    )

    class FlaskTask(celery_app.Task):
        abstract = True

        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = FlaskTask
    return celery_app


def init_extensions(app: Flask) -> None:
    """Init all Flask extensions in one place."""
    db.init_app(app)
    init_celery(app)
    jwt.init_app(app)
