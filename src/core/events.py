"""Domain event bus.

In-process dispatch to subscribed handlers, plus an optional fan-out of
every event to Redis pub/sub (one channel per event name) for services
outside this process.

Publishing is fire-and-forget: handler errors and Redis failures are logged
and never reach the caller, which has already persisted its state.
"""

import contextlib
import json
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from src.core.logging import get_logger
from src.core.redis import event_channel
from src.progress.events import DomainEvent


if TYPE_CHECKING:
    import redis.asyncio as redis

logger = get_logger(__name__)

EventHandler = Callable[[DomainEvent], Awaitable[None]]


class DomainEventBus:
    """Publish domain events to local handlers and Redis."""

    def __init__(
        self,
        redis_client: "redis.Redis | None" = None,
        channel_prefix: str = "events:enrollment",
    ):
        self.redis = redis_client
        self.channel_prefix = channel_prefix
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: type[DomainEvent], handler: EventHandler) -> None:
        """Register a handler for one event type."""
        self._handlers[event_type.event_name].append(handler)

    async def publish(self, event: DomainEvent) -> None:
        for handler in self._handlers.get(event.event_name, []):
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "event_handler_failed",
                    event_name=event.event_name,
                    event_id=str(event.event_id),
                    handler=getattr(handler, "__qualname__", repr(handler)),
                )

        await self._publish_remote(event)

    async def publish_all(self, events: list[DomainEvent]) -> None:
        for event in events:
            await self.publish(event)

    async def _publish_remote(self, event: DomainEvent) -> None:
        """Publish event to Redis Pub/Sub for other services."""
        if not self.redis:
            return

        channel = event_channel(self.channel_prefix, event.event_name)

        # Non-critical: consumers tolerate missed events
        with contextlib.suppress(Exception):
            await self.redis.publish(channel, json.dumps(event.to_dict()))
