"""Messaging shared with the workspace subsystem.

Outbound: workspace start and stop requests are pushed onto Redis lists
(consumers pop from the other end, oldest first).

Inbound: the workspace subsystem publishes headless build events on a
pub/sub channel as JSON: {"workspace_id": "...", "type": "finished"}.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from prewarm.config import WorkspaceQueueConfig
from prewarm.logging_config import get_logger

logger = get_logger(__name__)

# Event types that end a headless build
FINISHED_EVENT_TYPES = frozenset({"finished", "failed", "aborted", "timeout"})


@dataclass
class StartRequest:
    workspace_id: str
    instance_id: str
    owner_id: str
    excluded_feature_flags: list[str] = field(default_factory=list)


@dataclass
class StopRequest:
    workspace_id: str
    instance_id: str
    reason: str = ""


@dataclass
class HeadlessEvent:
    workspace_id: str
    type: str

    @property
    def is_finished(self) -> bool:
        return self.type in FINISHED_EVENT_TYPES


class WorkspaceBus:
    """Thin wrapper over the Redis keys the workspace subsystem listens on."""

    def __init__(self, redis: aioredis.Redis, config: WorkspaceQueueConfig) -> None:
        self.redis = redis
        self.config = config

    async def enqueue_start(self, request: StartRequest) -> None:
        await self.redis.lpush(self.config.start_queue, json.dumps(asdict(request)))
        logger.debug(
            "Workspace start requested",
            workspace_id=request.workspace_id,
            instance_id=request.instance_id,
        )

    async def enqueue_stop(self, request: StopRequest) -> None:
        await self.redis.lpush(self.config.stop_queue, json.dumps(asdict(request)))
        logger.debug(
            "Workspace stop requested",
            workspace_id=request.workspace_id,
            instance_id=request.instance_id,
        )

    async def listen_headless_events(
        self, handler: Callable[[HeadlessEvent], Awaitable[None]]
    ) -> None:
        """Subscribe to headless build events and dispatch finished ones to handler.

        Runs until cancelled. A failing handler is logged and does not end
        the subscription. A lost Redis connection is logged and the channel
        is subscribed again after reconnect_delay_seconds.
        """
        channel = self.config.headless_channel
        while True:
            try:
                await self._dispatch_headless_events(handler)
            except RedisError as e:
                logger.error(
                    "Headless event subscription failed, resubscribing",
                    channel=channel,
                    retry_in_seconds=self.config.reconnect_delay_seconds,
                    error=str(e),
                )
            else:
                logger.warning("Headless event subscription ended, resubscribing", channel=channel)
            await asyncio.sleep(self.config.reconnect_delay_seconds)

    async def _dispatch_headless_events(
        self, handler: Callable[[HeadlessEvent], Awaitable[None]]
    ) -> None:
        pubsub = self.redis.pubsub()
        try:
            await pubsub.subscribe(self.config.headless_channel)
            logger.info(
                "Listening for headless build events", channel=self.config.headless_channel
            )
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                event = parse_headless_event(message.get("data"))
                if event is None or not event.is_finished:
                    continue
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(
                        "Headless event handler failed",
                        workspace_id=event.workspace_id,
                        exc_info=e,
                    )
        finally:
            await pubsub.aclose()


def parse_headless_event(data: str | bytes | None) -> HeadlessEvent | None:
    if not data:
        return None
    try:
        payload = json.loads(data)
        return HeadlessEvent(workspace_id=str(payload["workspace_id"]), type=str(payload["type"]))
    except (ValueError, KeyError, TypeError):
        logger.warning("Malformed headless event", data=str(data)[:200])
        return None
