"""Broker connection and channel ownership.

A ConnectionManager owns exactly one aio-pika connection and one channel.
There is no automatic reconnection: a lost connection surfaces to the caller,
who decides whether to build a new Request.
"""

import asyncio
from enum import Enum

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractConnection
from loguru import logger

from rmq_client.config import AmqpProperties
from rmq_client.exceptions import AMQPConnectionError, AMQPUsageError


class ConnectionState(str, Enum):
    """AMQP connection state machine states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    CLOSED = "closed"


class ConnectionManager:
    """Owns one broker connection and one channel.

    ``connect()`` is idempotent. ``confirm_select()`` replaces the channel
    with one in publisher-confirm mode, since aio-pika fixes the confirm mode
    when a channel is opened. ``shutdown()`` closes channel then connection,
    tolerates either being closed already, and is terminal.
    """

    def __init__(self, config: AmqpProperties):
        self._config = config
        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._confirms_enabled = False
        self._state = ConnectionState.DISCONNECTED

    @property
    def config(self) -> AmqpProperties:
        return self._config

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        """Check if connection and channel are established and open."""
        return (
            self._state == ConnectionState.CONNECTED
            and self._connection is not None
            and not self._connection.is_closed
            and self._channel is not None
            and not self._channel.is_closed
        )

    @property
    def confirms_enabled(self) -> bool:
        return self._confirms_enabled

    @property
    def connection(self) -> AbstractConnection:
        if self._connection is None:
            raise AMQPUsageError("Not connected: call connect() first")
        return self._connection

    @property
    def channel(self) -> AbstractChannel:
        if self._channel is None:
            raise AMQPUsageError("Not connected: call connect() first")
        return self._channel

    async def connect(self) -> AbstractChannel:
        """Open the connection and channel if needed and return the channel.

        Raises:
            AMQPConnectionError: If the socket, TLS or AMQP handshake fails.
            AMQPUsageError: If the manager has already been shut down.
        """
        if self._state == ConnectionState.CLOSED:
            raise AMQPUsageError("Connection manager has been shut down")
        if self.is_connected:
            return self._channel
        if self._state == ConnectionState.CONNECTED:
            raise AMQPConnectionError(
                f"Connection to {self._config.connection_url_masked} was lost; "
                "shut down and start a new Request"
            )

        config = self._config
        self._state = ConnectionState.CONNECTING
        logger.debug("Connecting to RabbitMQ", url=config.connection_url_masked)

        client_properties = {}
        if config.connection_name:
            client_properties["connection_name"] = config.connection_name

        try:
            self._connection = await aio_pika.connect(
                host=config.host,
                port=config.port,
                login=config.username,
                password=config.password.get_secret_value(),
                virtualhost=config.vhost,
                ssl=config.ssl,
                ssl_options=dict(config.ssl_options) or None,
                timeout=config.connection_timeout,
                client_properties=client_properties or None,
                heartbeat=config.heartbeat,
            )
            self._channel = await self._connection.channel(publisher_confirms=False)
        except (OSError, asyncio.TimeoutError, aio_pika.exceptions.AMQPError) as e:
            await self._close_resources()
            self._state = ConnectionState.DISCONNECTED
            logger.error(
                "Failed to connect to RabbitMQ",
                url=config.connection_url_masked,
                error=str(e),
            )
            raise AMQPConnectionError(
                f"Failed to connect to {config.connection_url_masked}: {e}"
            ) from e

        self._confirms_enabled = False
        self._state = ConnectionState.CONNECTED
        logger.info("Connected to RabbitMQ", url=config.connection_url_masked)
        return self._channel

    async def confirm_select(self) -> AbstractChannel:
        """Switch to a publisher-confirm channel; a no-op if already switched.

        Broker returns and nacks are raised from the publish call by aio-pika
        once the channel is in confirm mode.
        """
        if self._confirms_enabled and self.is_connected:
            return self._channel

        await self.connect()
        old_channel = self._channel
        if not old_channel.is_closed:
            await old_channel.close()

        self._channel = await self._connection.channel(
            publisher_confirms=True,
            on_return_raises=True,
        )
        self._confirms_enabled = True
        logger.debug("Channel switched to confirm mode")
        return self._channel

    async def _close_resources(self) -> list[str]:
        errors = []

        if self._channel is not None:
            try:
                if not self._channel.is_closed:
                    await self._channel.close()
            except Exception as e:
                errors.append(f"channel: {e}")
                logger.warning(f"Error closing channel: {e}")

        if self._connection is not None:
            try:
                if not self._connection.is_closed:
                    await self._connection.close()
            except Exception as e:
                errors.append(f"connection: {e}")
                logger.warning(f"Error closing connection: {e}")

        self._channel = None
        self._connection = None
        self._confirms_enabled = False
        return errors

    async def shutdown(self) -> None:
        """Close channel then connection. Safe to call more than once."""
        if self._state == ConnectionState.CLOSED:
            return

        self._state = ConnectionState.DISCONNECTING
        errors = await self._close_resources()
        self._state = ConnectionState.CLOSED

        if errors:
            logger.warning(f"Connection closed with {len(errors)} error(s): {', '.join(errors)}")
        else:
            logger.debug("Connection closed successfully")
