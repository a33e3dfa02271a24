"""Task base class and the dispatcher facade used by the mail/webhook adapters."""
from .base_task import BaseTask
from .dispatcher import TaskDispatcher

__all__ = ["BaseTask", "TaskDispatcher"]
