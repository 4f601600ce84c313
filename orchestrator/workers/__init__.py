"""Background workers: Celery tasks and long-running asyncio loops."""
