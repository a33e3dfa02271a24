"""Base class for billing Celery tasks: run-scoped log context plus retry/failure events."""
from __future__ import annotations

from celery import Task

from core.logging_config import billing_context, get_logger

logger = get_logger(__name__)


class BaseTask(Task):
    """Every log line a task emits carries ``task_id`` and ``task_name``.

    Arguments are never logged as-is: mail bodies and webhook signatures travel as kwargs.
    """

    def __call__(self, *args, **kwargs):
        with billing_context(task_id=self.request.id, task_name=self.name):
            return super().__call__(*args, **kwargs)

    def on_retry(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.warning(
            "celery_task_retry",
            task_id=task_id,
            task_name=self.name,
            attempt=self.request.retries + 1,
            error=str(exc),
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)

    def on_failure(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.error(
            "celery_task_failure",
            task_id=task_id,
            task_name=self.name,
            arg_keys=sorted(kwargs or {}),
            error=str(exc),
            error_type=type(exc).__name__,
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval, task_id, args, kwargs):  # type: ignore[override]
        logger.info("celery_task_success", task_id=task_id, task_name=self.name)
        super().on_success(retval, task_id, args, kwargs)
