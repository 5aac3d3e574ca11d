"""Request/reply over a reply queue with correlation ids."""

import uuid
from typing import Any, Mapping

from aio_pika import Message
from loguru import logger

from rmq_client.consumer import ConsumerFactory
from rmq_client.exceptions import AMQPUsageError
from rmq_client.logging_setup import correlation_scope
from rmq_client.models import PropertiesLike, ReceivedMessage, coerce_properties
from rmq_client.publisher import PublisherFactory
from rmq_client.resolver import Resolver

DEFAULT_RPC_TIMEOUT = 30.0


class RpcClient:
    """Turns a publish plus a reply consume into one awaited call.

    By default every call declares its own exclusive, auto-delete reply
    queue, so a reply with a foreign correlation id can only be stale and is
    discarded. Setting ``rpc_reply_queue`` shares one named queue between
    calls instead; foreign replies are then requeued for the other waiters.
    Two callers on a shared queue can keep handing each other's replies
    back; each call's timeout bounds how long that lasts.
    """

    def __init__(self, publishers: PublisherFactory, consumers: ConsumerFactory):
        self._publishers = publishers
        self._consumers = consumers

    @staticmethod
    def _reply_overrides(
        overrides: Mapping[str, Any],
        shared_queue: str | None,
    ) -> dict[str, Any]:
        private = shared_queue is None
        return {
            **overrides,
            "queue": shared_queue or "",
            "queue_force_declare": True,
            "queue_passive": False,
            "queue_durable": False,
            "queue_exclusive": private,
            "queue_auto_delete": private,
            "queue_arguments": {},
            "routing": (),
            "persistent": True,
            "timeout": 0,
            "message_limit": None,
            "shutdown_signal": None,
            "consumer_no_ack": False,
        }

    async def call(
        self,
        routing_key: str,
        request: bytes | str | Message,
        properties: PropertiesLike = None,
        timeout: float = DEFAULT_RPC_TIMEOUT,
        correlation_id: str | None = None,
        overrides: Mapping[str, Any] | None = None,
    ) -> bytes | None:
        """Publish a request and wait for its reply.

        Args:
            routing_key: Routing key of the request.
            request: Request body.
            properties: Extra message properties for the request.
            timeout: Seconds to wait for the reply.
            correlation_id: Reuse a caller-chosen id instead of a generated one.
            overrides: Configuration overrides for this call.

        Returns:
            The reply body, or None on timeout or when the request was
            returned or nacked by the broker.
        """
        if timeout <= 0:
            raise AMQPUsageError("RPC timeout must be positive")
        if isinstance(request, Message):
            raise AMQPUsageError("RPC requests take a body; correlation_id and reply_to are set by the call")

        overrides = dict(overrides or {})
        correlation_id = correlation_id or str(uuid.uuid4())
        shared_queue = self._consumers.resolver.resolve(overrides).rpc_reply_queue or None

        with correlation_scope(correlation_id):
            consumer = self._consumers.create(self._reply_overrides(overrides, shared_queue))
            try:
                await consumer.setup()
                reply_to = consumer.queue_info.name

                publisher = self._publishers.create(
                    {**overrides, "queue": None},
                    connection_manager=consumer.connection_manager,
                )
                request_properties = coerce_properties(properties).model_copy(
                    update={"correlation_id": correlation_id, "reply_to": reply_to}
                )
                sent = await publisher.publish(routing_key, request, properties=request_properties)
                if not sent:
                    logger.warning("RPC request was not routed", routing_key=routing_key)
                    return None

                logger.debug("RPC request sent", routing_key=routing_key, reply_to=reply_to)
                replies: list[bytes] = []

                async def on_reply(message: ReceivedMessage, resolver: Resolver) -> None:
                    if message.correlation_id == correlation_id:
                        await resolver.acknowledge(message)
                        replies.append(message.body)
                        resolver.stop_when_processed()
                    elif shared_queue is not None:
                        logger.warning(
                            "Requeueing reply of another call on shared reply queue",
                            queue=reply_to,
                            received_correlation_id=message.correlation_id,
                        )
                        await resolver.reject(message, requeue=True)
                    else:
                        logger.warning(
                            "Discarding reply with unexpected correlation id",
                            queue=reply_to,
                            received_correlation_id=message.correlation_id,
                        )
                        await resolver.reject(message, requeue=False)

                await consumer.consume(on_reply, queue_name=reply_to, time_limit=timeout)

                if replies:
                    logger.info("RPC reply received", routing_key=routing_key)
                    return replies[0]

                logger.warning("RPC call timed out", routing_key=routing_key, timeout=timeout)
                return None
            finally:
                await consumer.shutdown()
