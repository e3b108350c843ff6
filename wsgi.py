"""WSGI-энтрипоинт для прод-окружения.

Используется такими серверами, как gunicorn или uWSGI:
    gunicorn wsgi:app
"""

import os

from unblocker import create_app
from unblocker.config import DevelopmentConfig, ProductionConfig, TestingConfig


def get_config_class():
    cfg_name = os.environ.get("APP_CONFIG", "production").lower()
    if cfg_name in {"dev", "development"}:
        return DevelopmentConfig
    if cfg_name in {"test", "testing"}:
        return TestingConfig
    return ProductionConfig


app = create_app(get_config_class())


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 8000)))
