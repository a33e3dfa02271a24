"""
Outbound webhooks: fan an event out to every matching subscription.

The body is serialized and signed here (HMAC-SHA256, hex digest) so secrets never travel
through the broker; delivery and retries happen in the ``webhooks.deliver`` task.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
from typing import Any, Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from application.ports.notifications import WebhookDispatcher
from core.logging_config import get_logger
from infrastructure.database import AsyncSessionLocal
from infrastructure.models.settings import WebhookSubscriptionModel
from infrastructure.tasks.utils.dispatcher import TaskDispatcher

logger = get_logger(__name__)


def sign_payload(secret: str, body: str) -> str:
    return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


def serialize_event(event_name: str, payload: dict[str, Any]) -> str:
    return json.dumps({"event": event_name, "data": payload}, sort_keys=True, separators=(",", ":"), default=str)


def _subscribed(events: Optional[str], event_name: str) -> bool:
    names = {name.strip() for name in (events or "*").split(",") if name.strip()}
    return "*" in names or event_name in names


class CeleryWebhookDispatcher(WebhookDispatcher):
    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        dispatcher: Optional[TaskDispatcher] = None,
    ):
        self._session_factory = session_factory
        self.dispatcher = dispatcher or TaskDispatcher()

    async def _subscriptions(self) -> List[WebhookSubscriptionModel]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookSubscriptionModel).where(WebhookSubscriptionModel.is_active.is_(True))
            )
            return list(result.scalars().all())

    async def dispatch(self, event_name: str, payload: dict[str, Any]) -> None:
        body = serialize_event(event_name, payload)
        targets = [s for s in await self._subscriptions() if _subscribed(s.events, event_name)]
        for subscription in targets:
            await asyncio.to_thread(
                self.dispatcher.deliver_webhook,
                subscription.url,
                event_name,
                body,
                sign_payload(subscription.secret, body),
            )
        logger.info("webhook_dispatched", event=event_name, subscriptions=len(targets))
