# Точка входа ДЛЯ РАЗРАБОТКИ (debug server)
# В продакшене использовать wsgi.py + gunicorn.

"""Запуск сервера разработки.

Конфигурация выбирается по ``APP_ENV`` (или ``FLASK_ENV``): значение,
начинающееся с ``prod``, даёт ProductionConfig, иначе DevelopmentConfig.
"""

import os

from unblocker import create_app
from unblocker.config import DevelopmentConfig, ProductionConfig


def _select_config_class() -> type:
    env = (os.getenv('APP_ENV') or os.getenv('FLASK_ENV') or 'development').lower()
    if env.startswith('prod'):
        return ProductionConfig
    return DevelopmentConfig


def main() -> None:
    app = create_app(_select_config_class())
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 5000)), debug=app.config.get('DEBUG', True))


if __name__ == '__main__':
    main()
