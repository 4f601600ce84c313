"""Celery tasks module.

Task modules are split by concern so routing can target them separately.
"""

__all__ = [
    "document_tasks",
    "maintenance_tasks",
]
