"""
Redis Change Feed

Carries row-level change notifications over Redis pub/sub, one channel
per table (``<prefix>:<table>``). Writers publish an envelope holding the
notification and the full row; readers evaluate subscription filters on
the row and hand only the notification to subscribers.

Envelope:
    {"event": <ChangeEvent json>, "row": <full row json or null>}

Version: 1.0.0
"""

import asyncio
import contextlib
import json
import logging
from typing import Any, Optional

from pydantic import ValidationError
from pydantic_core import to_jsonable_python
from redis.asyncio import Redis
from redis.exceptions import RedisError

from ordersync.schemas import ChangeEvent
from ordersync.services.backend.base import (
    BackendError,
    ChangeFilter,
    ChangeHandler,
    Subscription,
    SubscriptionError,
)

logger = logging.getLogger(__name__)

READ_TIMEOUT = 1.0


def encode_envelope(event: ChangeEvent, row: Optional[dict[str, Any]]) -> str:
    return json.dumps({
        "event": event.model_dump(mode="json"),
        "row": to_jsonable_python(row) if row is not None else None,
    })


def decode_envelope(data: Any) -> tuple[ChangeEvent, Optional[dict[str, Any]]]:
    """
    Decode a pub/sub payload into a notification and its filter row.

    Raises:
        ValueError: If the payload is not a valid envelope
    """
    if isinstance(data, bytes):
        data = data.decode()
    try:
        envelope = json.loads(data)
        event = ChangeEvent.model_validate(envelope["event"])
    except (json.JSONDecodeError, KeyError, TypeError, ValidationError) as e:
        raise ValueError(f"Malformed change envelope: {e}") from e
    row = envelope.get("row")
    return event, row if isinstance(row, dict) else None


class RedisChangeFeed:
    """Publish and consume change notifications through Redis pub/sub."""

    def __init__(self, redis: Redis, prefix: str = "cdc"):
        self._redis = redis
        self._prefix = prefix

    def channel_name(self, table: str) -> str:
        return f"{self._prefix}:{table}"

    async def publish(self, event: ChangeEvent, row: Optional[dict[str, Any]] = None) -> None:
        try:
            await self._redis.publish(self.channel_name(event.table), encode_envelope(event, row))
        except RedisError as e:
            raise BackendError(f"Failed to publish {event.table} change: {e}", table=event.table) from e

    async def subscribe(
        self,
        table: str,
        handler: ChangeHandler,
        change_filter: Optional[ChangeFilter] = None,
    ) -> Subscription:
        channel = self.channel_name(table)
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(channel)
        except RedisError as e:
            raise SubscriptionError(f"Failed to subscribe to {channel}: {e}", table=table) from e

        reader: Optional[asyncio.Task] = None

        async def release() -> None:
            if reader is not None:
                reader.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reader
            try:
                await pubsub.unsubscribe(channel)
                await pubsub.reset()
            except RedisError as e:
                logger.warning(f"Error releasing {channel}: {e}")

        subscription = Subscription(table, handler, change_filter, on_cancel=release)
        subscription.start()
        reader = asyncio.create_task(self._read(pubsub, subscription), name=f"feed:{channel}")
        logger.info(f"Subscribed to {channel} ({change_filter or 'all rows'})")
        return subscription

    async def _read(self, pubsub, subscription: Subscription) -> None:
        while subscription.active:
            try:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=READ_TIMEOUT
                )
            except RedisError as e:
                # No reconnection: the subscription stays silent until remount
                logger.error(f"Change feed for {subscription.table} lost: {e}")
                return
            if message is None:
                continue
            try:
                event, row = decode_envelope(message["data"])
            except ValueError as e:
                logger.warning(f"Dropping change on {subscription.table}: {e}")
                continue
            if subscription.accepts(row if row is not None else event.new_record or event.old_record):
                subscription.deliver(event)

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self._redis.aclose()
