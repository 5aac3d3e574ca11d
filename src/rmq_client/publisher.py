"""Publisher with mandatory/confirm handling and an instance-owned batch stage."""

import asyncio
from typing import Any, Mapping

import aio_pika
from aio_pika import Message
from aio_pika.abc import AbstractChannel, AbstractExchange
from loguru import logger
from pamqp.commands import Basic

from rmq_client.config import EffectiveConfig, PropertyResolver
from rmq_client.connection import ConnectionManager
from rmq_client.exceptions import AMQPPublishError
from rmq_client.models import MessageFactory, PropertiesLike
from rmq_client.request import Request

DEFAULT_EXCHANGE = ""


class Publisher(Request):
    """Sends single or batched messages to the configured exchange.

    ``publish(..., mandatory=True)`` switches the channel into confirm mode
    and waits for the broker's verdict: a return (unroutable) or a nack
    yields False, an ack yields True. Without mandatory the result is True
    once the frame has been handed to the connection, which means the send
    was accepted, not that it was delivered.
    """

    def __init__(
        self,
        config: EffectiveConfig,
        connection_manager: ConnectionManager | None = None,
        message_factory: MessageFactory | None = None,
    ):
        super().__init__(config, connection_manager)
        self._message_factory = message_factory or MessageFactory.from_config(config)
        self._staged: list[tuple[str, Message]] = []

    @property
    def message_factory(self) -> MessageFactory:
        return self._message_factory

    @property
    def staged_count(self) -> int:
        return len(self._staged)

    async def _get_exchange(self, channel: AbstractChannel, name: str) -> AbstractExchange:
        if name == DEFAULT_EXCHANGE:
            return channel.default_exchange
        return await channel.get_exchange(name, ensure=False)

    def _on_nack(self, exchange: str, routing_key: str, message: Message) -> None:
        logger.warning(
            "Message nacked by broker",
            exchange=exchange,
            routing_key=routing_key,
            correlation_id=message.correlation_id,
        )

    def _on_return(self, exchange: str, routing_key: str, message: Message, frame: Any) -> None:
        logger.warning(
            "Message returned as unroutable",
            exchange=exchange,
            routing_key=routing_key,
            correlation_id=message.correlation_id,
            reply_code=getattr(frame, "reply_code", None),
            reply_text=getattr(frame, "reply_text", None),
        )

    async def publish(
        self,
        routing_key: str,
        message: bytes | str | Message,
        mandatory: bool | None = None,
        properties: PropertiesLike = None,
    ) -> bool:
        """Publish to the configured exchange.

        Args:
            routing_key: Routing key for the message.
            message: Body or a prepared aio-pika Message.
            mandatory: Overrides the profile's ``mandatory`` flag.
            properties: Message properties applied over the profile defaults.

        Returns:
            False if the broker returned or nacked the message, else True.

        Raises:
            AMQPPublishError: If waiting for the confirm timed out.
        """
        return await self.publish_to(
            self._config.exchange,
            routing_key,
            message,
            mandatory=mandatory,
            properties=properties,
        )

    async def publish_to(
        self,
        exchange_name: str,
        routing_key: str,
        message: bytes | str | Message,
        mandatory: bool | None = None,
        properties: PropertiesLike = None,
    ) -> bool:
        """Publish to an explicit exchange; ``""`` is the default exchange."""
        if mandatory is None:
            mandatory = self._config.mandatory
        outgoing = self._message_factory.create(message, properties)

        await self.connect()
        manager = self._connection_manager
        if mandatory:
            channel = await manager.confirm_select()
        else:
            channel = manager.channel
        exchange = await self._get_exchange(channel, exchange_name)

        if not manager.confirms_enabled:
            await exchange.publish(outgoing, routing_key=routing_key)
            logger.debug("Message published", exchange=exchange_name, routing_key=routing_key)
            return True

        timeout = self._config.effective_publish_timeout
        try:
            confirmation = await asyncio.wait_for(
                exchange.publish(outgoing, routing_key=routing_key, mandatory=mandatory),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                "Publish confirmation timeout",
                exchange=exchange_name,
                routing_key=routing_key,
                timeout=timeout,
            )
            raise AMQPPublishError(f"Publish confirmation timeout after {timeout}s")
        except aio_pika.exceptions.DeliveryError as e:
            if isinstance(e.frame, Basic.Nack):
                self._on_nack(exchange_name, routing_key, outgoing)
            else:
                self._on_return(exchange_name, routing_key, outgoing, e.frame)
            return False

        if isinstance(confirmation, Basic.Nack):
            self._on_nack(exchange_name, routing_key, outgoing)
            return False

        logger.info(
            "Message published",
            exchange=exchange_name,
            routing_key=routing_key,
            correlation_id=outgoing.correlation_id,
            confirmed=True,
        )
        return True

    def batch_basic_publish(
        self,
        routing_key: str,
        message: bytes | str | Message,
        properties: PropertiesLike = None,
    ) -> None:
        """Stage a message for the next batch_publish(); nothing is sent yet."""
        self._staged.append((routing_key, self._message_factory.create(message, properties)))

    async def batch_publish(self) -> int:
        """Send every staged message back to back and clear the stage.

        The stage is kept when connecting or sending fails.

        Returns:
            Number of messages sent.
        """
        staged = list(self._staged)
        if not staged:
            return 0

        channel = await self.connect()
        exchange = await self._get_exchange(channel, self._config.exchange)
        await asyncio.gather(
            *(exchange.publish(message, routing_key=routing_key) for routing_key, message in staged)
        )
        del self._staged[: len(staged)]
        logger.info("Batch published", exchange=self._config.exchange, count=len(staged))
        return len(staged)


class PublisherFactory:
    """Builds Publishers from per-call overrides over one base profile."""

    def __init__(self, resolver: PropertyResolver):
        self._resolver = resolver

    @property
    def resolver(self) -> PropertyResolver:
        return self._resolver

    def create(
        self,
        overrides: Mapping[str, Any] | None = None,
        connection_manager: ConnectionManager | None = None,
    ) -> Publisher:
        return Publisher(self._resolver.resolve(overrides), connection_manager)
