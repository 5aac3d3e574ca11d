"""Per-loop control object handed to consumer handlers."""

from enum import Enum
from typing import TYPE_CHECKING

from loguru import logger

from rmq_client.exceptions import AMQPUsageError
from rmq_client.models import PropertiesLike, ReceivedMessage, coerce_properties

if TYPE_CHECKING:
    from rmq_client.publisher import Publisher


class LoopState(str, Enum):
    """Consume loop states."""

    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class Resolution(str, Enum):
    """Final decision recorded for a delivery tag."""

    ACKNOWLEDGED = "acknowledged"
    REJECTED = "rejected"
    REQUEUED = "requeued"


class Resolver:
    """Acknowledges, rejects and replies to messages of one consume loop.

    Every delivery tag can be resolved exactly once; a second attempt raises
    AMQPUsageError. A stop request takes effect once the running handler
    returns.
    """

    def __init__(
        self,
        publisher: "Publisher | None" = None,
        shutdown_signal: str | None = None,
        no_ack: bool = False,
    ):
        self._publisher = publisher
        self._shutdown_signal = shutdown_signal.encode("utf-8") if shutdown_signal else None
        self._no_ack = no_ack
        self._resolutions: dict[int, Resolution] = {}
        self._state = LoopState.RUNNING
        self.processed_count = 0

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def stop_requested(self) -> bool:
        return self._state != LoopState.RUNNING

    def resolution(self, message: ReceivedMessage) -> Resolution | None:
        return self._resolutions.get(message.delivery_tag)

    def _claim(self, message: ReceivedMessage, resolution: Resolution) -> None:
        if self._no_ack:
            raise AMQPUsageError("Messages consumed with no_ack cannot be acknowledged or rejected")
        if message.raw is None:
            raise AMQPUsageError("Message carries no delivery to resolve")

        tag = message.delivery_tag
        previous = self._resolutions.get(tag)
        if previous is not None:
            raise AMQPUsageError(f"Message with delivery tag {tag} was already {previous.value}")
        self._resolutions[tag] = resolution

    async def acknowledge(self, message: ReceivedMessage) -> None:
        """Ack this delivery tag only."""
        self._claim(message, Resolution.ACKNOWLEDGED)
        try:
            await message.raw.ack()
        except Exception:
            del self._resolutions[message.delivery_tag]
            raise
        logger.debug("Message acknowledged", delivery_tag=message.delivery_tag)

        if self._shutdown_signal is not None and message.body == self._shutdown_signal:
            logger.info("Shutdown signal received", delivery_tag=message.delivery_tag)
            self.stop_when_processed()

    async def reject(self, message: ReceivedMessage, requeue: bool = False) -> None:
        """Reject this delivery; ``requeue=False`` discards or dead-letters it."""
        self._claim(message, Resolution.REQUEUED if requeue else Resolution.REJECTED)
        try:
            await message.raw.reject(requeue=requeue)
        except Exception:
            del self._resolutions[message.delivery_tag]
            raise
        logger.debug("Message rejected", delivery_tag=message.delivery_tag, requeue=requeue)

    async def reply(
        self,
        message: ReceivedMessage,
        body: bytes | str,
        properties: PropertiesLike = None,
    ) -> bool:
        """Publish a response to the message's reply-to queue.

        The response goes through the default exchange and carries the
        original correlation id. The original message is not acknowledged.
        """
        if not message.reply_to:
            raise AMQPUsageError("Cannot reply: original message has no reply_to property")
        if self._publisher is None:
            raise AMQPUsageError("Cannot reply: no publisher attached to this consumer")

        props = coerce_properties(properties)
        if message.correlation_id is not None:
            props = props.model_copy(update={"correlation_id": message.correlation_id})

        return await self._publisher.publish_to(
            "",
            message.reply_to,
            body,
            mandatory=False,
            properties=props,
        )

    def stop_when_processed(self) -> None:
        """Stop the loop after the current handler returns."""
        if self._state == LoopState.RUNNING:
            self._state = LoopState.STOPPING

    def mark_processed(self) -> int:
        self.processed_count += 1
        return self.processed_count

    def finish(self) -> None:
        self._state = LoopState.STOPPED
