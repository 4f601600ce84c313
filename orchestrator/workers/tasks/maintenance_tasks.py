"""Periodic maintenance tasks: the aggregation poll and stale job recovery."""

import asyncio

import structlog

from orchestrator.workers.celery import celery_app

logger = structlog.get_logger(__name__)


@celery_app.task(
    name="orchestrator.workers.tasks.maintenance_tasks.trigger_ready_aggregations",
    bind=True,
    max_retries=0,
)
def trigger_ready_aggregations(self) -> dict:
    """Poll fallback: aggregate every document whose pages are all counted.

    Runs on the beat schedule configured in celery.py. Duplicate triggers
    with the change feed are expected and resolved by the aggregator.

    Returns:
        Dictionary with poll summary counts.
    """
    from orchestrator.core.config import get_settings
    from orchestrator.services.completion_watcher import get_completion_watcher

    if not get_settings().aggregation_poll_enabled:
        logger.debug("aggregation_poll_task_skipped", reason="disabled_in_config")
        return {"skipped": True, "reason": "Aggregation polling disabled"}

    watcher = get_completion_watcher()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        summary = loop.run_until_complete(watcher.poll_once())
    except Exception as e:
        logger.error("aggregation_poll_task_failed", error=str(e))
        # Runs again on the next beat tick
        return {"error": str(e)}
    finally:
        loop.close()

    return summary


@celery_app.task(
    name="orchestrator.workers.tasks.maintenance_tasks.recover_stale_documents",
    bind=True,
    max_retries=0,
)
def recover_stale_documents(self) -> dict:
    """Fail documents stuck in processing and release stuck aggregations.

    Runs on the beat schedule configured in celery.py.

    Returns:
        Dictionary with recovery summary counts.
    """
    from orchestrator.core.config import get_settings
    from orchestrator.services.job_recovery import get_job_recovery_service

    if not get_settings().job_recovery_enabled:
        logger.debug("job_recovery_task_skipped", reason="disabled_in_config")
        return {"skipped": True, "reason": "Job recovery disabled"}

    service = get_job_recovery_service()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        summary = loop.run_until_complete(service.recover_stale_documents())
    except Exception as e:
        logger.error("job_recovery_task_failed", error=str(e))
        return {"error": str(e)}
    finally:
        loop.close()

    return summary
