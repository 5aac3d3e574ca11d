"""Consumer receive loop."""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Mapping

from loguru import logger

from rmq_client.config import EffectiveConfig, PropertyResolver
from rmq_client.connection import ConnectionManager
from rmq_client.exceptions import AMQPUsageError
from rmq_client.models import ConsumeResult, ReceivedMessage
from rmq_client.publisher import Publisher
from rmq_client.request import Request, RequestState
from rmq_client.resolver import Resolver

MessageHandler = Callable[[ReceivedMessage, Resolver], Awaitable[None] | None]


class Consumer(Request):
    """Runs a consume loop over one queue.

    The loop ends on the first of: a stop requested through the Resolver,
    ``message_limit`` handled messages, ``timeout`` idle seconds, or the
    ``time_limit`` passed to consume(). Messages are never acknowledged on
    the handler's behalf.
    """

    def __init__(
        self,
        config: EffectiveConfig,
        connection_manager: ConnectionManager | None = None,
    ):
        super().__init__(config, connection_manager)
        self._publisher: Publisher | None = None

    @property
    def publisher(self) -> Publisher:
        """Publisher on this consumer's connection, used for replies."""
        if self._publisher is None:
            self._publisher = Publisher(self._config, self._connection_manager)
        return self._publisher

    def _resolve_queue_name(self, queue_name: str | None) -> str:
        if queue_name:
            return queue_name
        if self._queue_info is not None:
            return self._queue_info.name
        if self._config.queue:
            return self._config.queue
        raise AMQPUsageError("No queue to consume from: set 'queue' or pass a queue name")

    @staticmethod
    def _next_wait(idle_timeout: float, deadline: float | None) -> float | None:
        loop = asyncio.get_running_loop()
        waits = []
        if idle_timeout > 0:
            waits.append(idle_timeout)
        if deadline is not None:
            waits.append(max(deadline - loop.time(), 0.0))
        return min(waits) if waits else None

    async def consume(
        self,
        handler: MessageHandler,
        queue_name: str | None = None,
        time_limit: float | None = None,
    ) -> ConsumeResult:
        """Consume until stopped, limited, idle or out of time.

        Args:
            handler: Called as ``handler(message, resolver)``; may be a coroutine.
            queue_name: Queue to read; defaults to the declared or configured queue.
            time_limit: Overall seconds before the loop gives up.

        Returns:
            How the loop terminated.

        Raises:
            Exception: Whatever the handler raised, after the Request is shut down.
        """
        if self._state != RequestState.READY:
            await self.setup()

        config = self._config
        name = self._resolve_queue_name(queue_name)
        channel = self.channel

        if (
            not config.persistent
            and self._queue_info is not None
            and self._queue_info.name == name
            and self._queue_info.message_count == 0
        ):
            logger.info("Queue is empty, nothing to consume", queue=name)
            return ConsumeResult.QUEUE_EMPTY

        if config.qos:
            await channel.set_qos(
                prefetch_count=config.qos_prefetch_count,
                prefetch_size=config.qos_prefetch_size,
                global_=config.qos_global,
            )

        queue = await channel.get_queue(name, ensure=False)
        resolver = Resolver(
            publisher=self.publisher,
            shutdown_signal=config.shutdown_signal,
            no_ack=config.consumer_no_ack,
        )
        deadline = None
        if time_limit is not None:
            deadline = asyncio.get_running_loop().time() + time_limit

        logger.info(
            "Consumer started",
            queue=name,
            message_limit=config.message_limit,
            timeout=config.timeout,
            time_limit=time_limit,
        )

        result = ConsumeResult.STOPPED
        failure: Exception | None = None
        async with queue.iterator(
            no_ack=config.consumer_no_ack,
            exclusive=config.consumer_exclusive,
            consumer_tag=config.consumer_tag,
            arguments=dict(config.consumer_arguments) or None,
        ) as messages:
            while True:
                wait = self._next_wait(config.timeout, deadline)
                try:
                    incoming = await asyncio.wait_for(messages.__anext__(), timeout=wait)
                except asyncio.TimeoutError:
                    result = ConsumeResult.TIMED_OUT
                    break
                except StopAsyncIteration:
                    result = ConsumeResult.STOPPED
                    break

                message = ReceivedMessage.from_incoming(incoming)
                try:
                    outcome = handler(message, resolver)
                    if inspect.isawaitable(outcome):
                        await outcome
                except Exception as e:
                    logger.exception(
                        "Message handler failed",
                        queue=name,
                        delivery_tag=message.delivery_tag,
                    )
                    failure = e
                    break

                processed = resolver.mark_processed()
                if resolver.stop_requested:
                    result = ConsumeResult.STOPPED
                    break
                if config.message_limit is not None and processed >= config.message_limit:
                    result = ConsumeResult.LIMIT_REACHED
                    break

        resolver.finish()

        if failure is not None:
            await self.shutdown()
            raise failure

        logger.info(
            "Consumer finished",
            queue=name,
            result=result.value,
            processed=resolver.processed_count,
        )
        return result


class ConsumerFactory:
    """Builds Consumers from per-call overrides over one base profile."""

    def __init__(self, resolver: PropertyResolver):
        self._resolver = resolver

    @property
    def resolver(self) -> PropertyResolver:
        return self._resolver

    def create(
        self,
        overrides: Mapping[str, Any] | None = None,
        connection_manager: ConnectionManager | None = None,
    ) -> Consumer:
        return Consumer(self._resolver.resolve(overrides), connection_manager)
