from medmarket.core.celery_app import celery_app  # noqa: F401
