"""Celery workers package."""
