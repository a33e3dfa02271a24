"""
Structlog 日志配置模块

Billing code logs structured events only (``logger.info("payment_recorded", invoice_id=...)``);
money values are rendered as strings and sweep/task runs bind their identifiers via
:func:`billing_context` so every line they emit can be correlated.
"""
import logging
import json
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Iterator, List

import structlog
from structlog.processors import TimeStamper, add_log_level, JSONRenderer
from structlog.dev import ConsoleRenderer
from structlog.contextvars import bound_contextvars, merge_contextvars
from structlog.stdlib import ProcessorFormatter

from core.config import settings


# 第三方库日志默认只保留 WARNING
_NOISY_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore", "kombu", "celery.worker.strategy")


def _stringify_decimals(_logger: Any, _method: str, event_dict: dict) -> dict:
    """金额统一以字符串输出，避免 JSON 渲染为 Decimal('..')"""
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = str(value)
    return event_dict


def _add_service(_logger: Any, _method: str, event_dict: dict) -> dict:
    event_dict.setdefault("service", settings.billing.app_name)
    event_dict.setdefault("env", settings.ENVIRONMENT)
    return event_dict


def get_renderer() -> Any:
    """DEBUG 下用彩色控制台输出，其余环境输出单行 JSON"""
    if settings.DEBUG:
        return ConsoleRenderer(colors=True)

    # structlog 会传入 default 等关键字参数
    def _dumps(obj, default=None, **kwargs):
        return json.dumps(obj, ensure_ascii=False, default=default, **kwargs)

    return JSONRenderer(serializer=_dumps)


def configure_logging() -> None:
    """structlog 与标准库 logging（Celery/SQLAlchemy）共用同一处理链"""
    shared_pre_chain: List[Any] = [
        merge_contextvars,
        add_log_level,
        TimeStamper(fmt="iso", utc=True),
        _add_service,
        _stringify_decimals,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=[*shared_pre_chain, ProcessorFormatter.wrap_for_formatter],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(ProcessorFormatter(
        foreign_pre_chain=shared_pre_chain,
        processors=[ProcessorFormatter.remove_processors_meta, get_renderer()],
    ))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO if settings.DEBUG else logging.WARNING)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def billing_context(**values: Any) -> Iterator[None]:
    """Bind ``values`` (run id, task id, invoice id ...) onto every log line inside the block."""
    with bound_contextvars(**{k: v for k, v in values.items() if v is not None}):
        yield


configure_logging()
