"""Exchange and queue declaration for a single Request."""

from dataclasses import dataclass
from typing import Iterable

from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractQueue
from loguru import logger

from rmq_client.config import EffectiveConfig
from rmq_client.models import QueueInfo


@dataclass
class Topology:
    """Declared broker objects. Queue fields are None when no queue was declared."""

    exchange: AbstractExchange
    queue: AbstractQueue | None = None
    queue_info: QueueInfo | None = None


class TopologyDeclarator:
    """Declares the exchange, the optional queue and its bindings.

    Passive flags turn declarations into existence checks. Broker errors such
    as precondition failures are not caught here.
    """

    def __init__(self, config: EffectiveConfig, channel: AbstractChannel):
        self._config = config
        self._channel = channel

    async def declare_exchange(self) -> AbstractExchange:
        config = self._config
        exchange = await self._channel.declare_exchange(
            config.exchange,
            type=config.exchange_type,
            durable=config.exchange_durable,
            auto_delete=config.exchange_auto_delete,
            internal=config.exchange_internal,
            passive=config.exchange_passive,
            arguments=dict(config.exchange_arguments) or None,
        )
        logger.debug(
            "Exchange declared",
            exchange=config.exchange,
            exchange_type=config.exchange_type,
            passive=config.exchange_passive,
        )
        return exchange

    async def declare_queue(self) -> tuple[AbstractQueue, QueueInfo]:
        """Declare the configured queue; an empty name gets a server-generated one."""
        config = self._config
        queue = await self._channel.declare_queue(
            config.queue or None,
            durable=config.queue_durable,
            exclusive=config.queue_exclusive,
            passive=config.queue_passive,
            auto_delete=config.queue_auto_delete,
            arguments=dict(config.queue_arguments) or None,
        )

        result = queue.declaration_result
        info = QueueInfo(
            name=queue.name,
            message_count=result.message_count or 0,
            consumer_count=result.consumer_count or 0,
        )
        logger.debug(
            "Queue declared",
            queue=info.name,
            message_count=info.message_count,
            passive=config.queue_passive,
        )
        return queue, info

    async def bind(
        self,
        queue: AbstractQueue,
        exchange: AbstractExchange | str,
        routing_keys: Iterable[str],
    ) -> int:
        """Bind the queue once per non-empty routing key; returns the bind count."""
        count = 0
        for routing_key in routing_keys:
            if not routing_key:
                continue
            await queue.bind(exchange, routing_key=routing_key)
            count += 1
            logger.debug("Queue bound", queue=queue.name, routing_key=routing_key)
        return count

    async def declare(self) -> Topology:
        """Declare exchange, then queue and bindings when a queue is configured."""
        exchange = await self.declare_exchange()
        if not self._config.declares_queue:
            return Topology(exchange=exchange)

        queue, info = await self.declare_queue()
        await self.bind(queue, exchange, self._config.routing)
        return Topology(exchange=exchange, queue=queue, queue_info=info)
