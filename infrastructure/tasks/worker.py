"""Billing worker entry point.

``python -m infrastructure.tasks.worker`` consumes every billing queue; ``--beat`` also runs
the daily sweep scheduler in-process, for single-node deployments. Larger deployments use the
standard ``celery -A infrastructure.tasks worker`` / ``celery beat`` commands instead.
"""
from __future__ import annotations

import sys
from typing import Optional, Sequence

from core.logging_config import get_logger

from .config.celery import BILLING_QUEUES, celery_app

logger = get_logger(__name__)


def build_argv(argv: Sequence[str]) -> list[str]:
    args = list(argv)
    embed_beat = "--beat" in args
    if embed_beat:
        args.remove("--beat")
    worker_argv = [
        "worker",
        "--hostname=billing@%h",
        f"--queues={','.join(BILLING_QUEUES)}",
        "--loglevel=INFO",
    ]
    if embed_beat:
        worker_argv.append("--beat")
    return worker_argv + args


def main(argv: Optional[Sequence[str]] = None) -> None:
    worker_argv = build_argv(sys.argv[1:] if argv is None else argv)
    logger.info("billing_worker_starting", argv=worker_argv)
    celery_app.worker_main(argv=worker_argv)


if __name__ == "__main__":
    main()
