"""Scan queue workers: Celery tasks plus the standalone runner (runner.py)."""

# Registers the Celery tasks when autodiscovery imports this package
from app.features.scan.workers import tasks  # noqa: F401
