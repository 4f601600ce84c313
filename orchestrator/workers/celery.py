"""Celery application configuration."""

import ssl
from pathlib import Path

from celery import Celery
from celery.signals import task_failure, worker_process_init
from dotenv import load_dotenv

# Load .env before settings so the Google SDK sees credentials in os.environ
env_file = Path(__file__).parent.parent.parent / ".env"
if env_file.exists():
    load_dotenv(env_file)

import structlog  # noqa: E402

from orchestrator.core.config import get_settings  # noqa: E402
from orchestrator.core.logging import configure_logging  # noqa: E402

settings = get_settings()

_time_limit = settings.document_task_time_limit

celery_app = Celery(
    "orchestrator_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# TLS brokers (rediss://) need explicit certificate requirements
_uses_tls = settings.celery_broker_url.startswith("rediss://")
_ssl_config = {"ssl_cert_reqs": ssl.CERT_REQUIRED} if _uses_tls else {}

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_acks_on_failure_or_timeout=True,
    result_expires=3600,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
    task_time_limit=_time_limit,
    task_soft_time_limit=max(_time_limit - 300, 60),
    # Page analysis on "default", the aggregation poll on "low"
    task_queues={
        "default": {"exchange": "default", "binding_key": "default"},
        "low": {"exchange": "low", "binding_key": "low"},
    },
    task_default_queue="default",
    task_routes={
        "orchestrator.workers.tasks.document_tasks.*": {"queue": "default"},
        "orchestrator.workers.tasks.maintenance_tasks.*": {"queue": "low"},
    },
    # visibility_timeout must exceed task_time_limit or Redis redelivers running tasks
    broker_transport_options={
        "visibility_timeout": _time_limit * 2,
        **_ssl_config,
    },
    broker_use_ssl=_ssl_config if _uses_tls else None,
    redis_backend_use_ssl=_ssl_config if _uses_tls else None,
    # Poll fallback for change-feed triggers the watcher missed
    beat_schedule={
        "trigger-ready-aggregations": {
            "task": "orchestrator.workers.tasks.maintenance_tasks.trigger_ready_aggregations",
            "schedule": settings.aggregation_poll_interval,
            "options": {"queue": "low"},
        },
        "recover-stale-documents": {
            "task": "orchestrator.workers.tasks.maintenance_tasks.recover_stale_documents",
            "schedule": settings.job_recovery_interval,
            "options": {"queue": "low"},
        },
    },
)

celery_app.autodiscover_tasks(["orchestrator.workers.tasks"])

_logger = structlog.get_logger(__name__)

from orchestrator.workers.tasks import (  # noqa: E402, F401
    document_tasks,
    maintenance_tasks,
)


@worker_process_init.connect
def init_worker_logging(**kwargs) -> None:
    """Configure structlog in each worker process."""
    configure_logging()


@task_failure.connect
def handle_task_failure(
    sender=None,
    task_id=None,
    exception=None,
    args=None,
    kwargs=None,
    **kw,
):
    """Log tasks that failed permanently."""
    _logger.critical(
        "celery_task_failed",
        task_name=sender.name if sender else "unknown",
        task_id=task_id,
        exception_type=type(exception).__name__ if exception else None,
        exception_message=str(exception)[:500] if exception else None,
        args=args,
    )
