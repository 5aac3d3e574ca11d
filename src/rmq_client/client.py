"""Client facade holding the factories, batch buffer and RPC client.

Each operation builds its own Request from the base profile plus the call's
overrides and always shuts it down afterwards.
"""

import uuid
from typing import Any, Mapping, Sequence

from aio_pika import Message
from loguru import logger

from rmq_client.config import AmqpProperties, PropertyResolver, Settings, get_settings
from rmq_client.consumer import ConsumerFactory, MessageHandler
from rmq_client.exceptions import AMQPUsageError
from rmq_client.models import ConsumeResult, MessageFactory, PropertiesLike
from rmq_client.publisher import PublisherFactory
from rmq_client.rpc import DEFAULT_RPC_TIMEOUT, RpcClient

LISTENER_QUEUE_PREFIX = "listener-"

MessageBody = bytes | str | Message


class BatchBuffer:
    """Messages staged by one client until the next batch_publish()."""

    def __init__(self):
        self._items: list[tuple[str, MessageBody, PropertiesLike]] = []

    def __len__(self) -> int:
        return len(self._items)

    def add(self, routing_key: str, message: MessageBody, properties: PropertiesLike = None) -> None:
        self._items.append((routing_key, message, properties))

    def items(self) -> list[tuple[str, MessageBody, PropertiesLike]]:
        return list(self._items)

    def clear(self) -> None:
        self._items.clear()


def split_routing_keys(routing_keys: str | Sequence[str]) -> list[str]:
    """Normalize a comma-separated string or a sequence into non-empty keys."""
    if isinstance(routing_keys, str):
        routing_keys = routing_keys.split(",")
    return [key.strip() for key in routing_keys if key and key.strip()]


class AMQPClient:
    """Entry point for publishing, consuming, listening and RPC.

    Usage:
        client = AMQPClient()
        await client.publish("orders.created", "order-1")
        await client.consume("orders", handler, {"message_limit": 1})
    """

    def __init__(
        self,
        settings: Settings | None = None,
        base: AmqpProperties | Mapping[str, Any] | None = None,
    ):
        self._settings = settings or get_settings()
        self._resolver = PropertyResolver(base if base is not None else self._settings.amqp)
        self.publishers = PublisherFactory(self._resolver)
        self.consumers = ConsumerFactory(self._resolver)
        self.messages = MessageFactory.from_config(self._resolver.base)
        self.rpc_client = RpcClient(self.publishers, self.consumers)
        self._batch = BatchBuffer()

    @property
    def resolver(self) -> PropertyResolver:
        return self._resolver

    @property
    def pending_batch_size(self) -> int:
        return len(self._batch)

    async def publish(
        self,
        routing_key: str,
        message: MessageBody,
        overrides: Mapping[str, Any] | None = None,
        properties: PropertiesLike = None,
        mandatory: bool | None = None,
    ) -> bool:
        """Declare the topology and publish one message."""
        async with self.publishers.create(overrides) as publisher:
            return await publisher.publish(
                routing_key,
                message,
                mandatory=mandatory,
                properties=properties,
            )

    def batch_basic_publish(
        self,
        routing_key: str,
        message: MessageBody,
        properties: PropertiesLike = None,
    ) -> None:
        """Stage a message for the next batch_publish()."""
        self._batch.add(routing_key, message, properties)

    async def batch_publish(self, overrides: Mapping[str, Any] | None = None) -> int:
        """Send all staged messages; the buffer is cleared once they are sent."""
        if not len(self._batch):
            return 0

        async with self.publishers.create(overrides) as publisher:
            for routing_key, message, properties in self._batch.items():
                publisher.batch_basic_publish(routing_key, message, properties)
            count = await publisher.batch_publish()

        self._batch.clear()
        return count

    async def consume(
        self,
        queue: str,
        handler: MessageHandler,
        overrides: Mapping[str, Any] | None = None,
        time_limit: float | None = None,
    ) -> ConsumeResult:
        """Consume from a queue until the loop terminates."""
        consumer = self.consumers.create({**(overrides or {}), "queue": queue})
        async with consumer:
            return await consumer.consume(handler, time_limit=time_limit)

    async def listen(
        self,
        routing_keys: str | Sequence[str],
        handler: MessageHandler,
        overrides: Mapping[str, Any] | None = None,
        time_limit: float | None = None,
    ) -> ConsumeResult:
        """Bind a queue to one or more routing keys and consume from it.

        Without a ``queue`` override an auto-deleting ``listener-<uuid>``
        queue is declared. The exchange type defaults to topic.

        Raises:
            AMQPUsageError: If no non-empty routing key is given.
        """
        keys = split_routing_keys(routing_keys)
        if not keys:
            raise AMQPUsageError("Routing keys must be a non-empty string or sequence")

        merged = {"exchange_type": "topic", **(overrides or {}), "routing": keys}
        if not merged.get("queue"):
            merged["queue"] = f"{LISTENER_QUEUE_PREFIX}{uuid.uuid4().hex}"
            merged.setdefault("queue_durable", False)
            merged.setdefault("queue_auto_delete", True)

        logger.info("Listening", queue=merged["queue"], routing_keys=keys)
        consumer = self.consumers.create(merged)
        async with consumer:
            return await consumer.consume(handler, time_limit=time_limit)

    async def rpc(
        self,
        routing_key: str,
        request: bytes | str,
        overrides: Mapping[str, Any] | None = None,
        timeout: float = DEFAULT_RPC_TIMEOUT,
        properties: PropertiesLike = None,
        correlation_id: str | None = None,
    ) -> bytes | None:
        """Send a request and return the reply body, or None on timeout."""
        return await self.rpc_client.call(
            routing_key,
            request,
            properties=properties,
            timeout=timeout,
            correlation_id=correlation_id,
            overrides=overrides,
        )

    def message(self, body: bytes | str, properties: PropertiesLike = None) -> Message:
        """Build a message with the base profile's defaults."""
        return self.messages.create(body, properties)
