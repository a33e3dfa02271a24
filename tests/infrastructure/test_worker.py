from structlog.contextvars import get_contextvars

from core.logging_config import billing_context
from infrastructure.tasks.config import BILLING_QUEUES, CELERY_BEAT_SCHEDULE, celery_app
from infrastructure.tasks.worker import build_argv


def test_worker_consumes_all_billing_queues():
    argv = build_argv(["--concurrency=2"])
    assert argv[0] == "worker"
    assert "--queues=billing,notifications,webhooks" in argv
    assert "--beat" not in argv
    assert argv[-1] == "--concurrency=2"


def test_worker_can_embed_beat():
    assert "--beat" in build_argv(["--beat"])


def test_routes_and_schedule():
    routes = celery_app.conf.task_routes
    assert routes["billing.*"] == {"queue": "billing"}
    assert set(BILLING_QUEUES) == {q.name for q in celery_app.conf.task_queues}
    tasks = {entry["task"] for entry in CELERY_BEAT_SCHEDULE.values()}
    assert tasks == {"billing.check_expirations", "billing.generate_recurring_invoices"}


def test_billing_context_binds_and_unbinds():
    with billing_context(sweep="expiration", invoice_id=None):
        bound = get_contextvars()
        assert bound["sweep"] == "expiration"
        assert "invoice_id" not in bound
    assert "sweep" not in get_contextvars()
