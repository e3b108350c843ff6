"""Сервисный слой: доступ, отчёты, уведомления."""
