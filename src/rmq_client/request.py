"""Request lifecycle shared by Publisher and Consumer.

State machine: unconnected -> connected -> declared -> ready, terminal closed.
"""

from enum import Enum
from typing import Iterable

from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractQueue
from loguru import logger

from rmq_client.config import EffectiveConfig
from rmq_client.connection import ConnectionManager
from rmq_client.exceptions import AMQPUsageError
from rmq_client.models import QueueInfo
from rmq_client.topology import TopologyDeclarator


class RequestState(str, Enum):
    """Request lifecycle states."""

    UNCONNECTED = "unconnected"
    CONNECTED = "connected"
    DECLARED = "declared"
    READY = "ready"
    CLOSED = "closed"


class Request:
    """Connection plus declared topology for one effective configuration.

    A Request created without a ConnectionManager builds and owns one, and
    closes it on shutdown. A Request handed an existing manager leaves it
    open for its owner.
    """

    def __init__(
        self,
        config: EffectiveConfig,
        connection_manager: ConnectionManager | None = None,
    ):
        self._config = config
        self._owns_connection = connection_manager is None
        self._connection_manager = connection_manager or ConnectionManager(config)
        self._state = RequestState.UNCONNECTED
        self._exchange: AbstractExchange | None = None
        self._queue: AbstractQueue | None = None
        self._queue_info: QueueInfo | None = None

    async def __aenter__(self):
        await self.setup()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    @property
    def config(self) -> EffectiveConfig:
        return self._config

    @property
    def connection_manager(self) -> ConnectionManager:
        return self._connection_manager

    @property
    def owns_connection(self) -> bool:
        return self._owns_connection

    @property
    def state(self) -> RequestState:
        return self._state

    @property
    def channel(self) -> AbstractChannel:
        return self._connection_manager.channel

    @property
    def queue_info(self) -> QueueInfo | None:
        """Snapshot from the last queue declaration, or None."""
        return self._queue_info

    @property
    def message_count(self) -> int:
        """Ready messages reported when the queue was declared."""
        return self._queue_info.message_count if self._queue_info else 0

    def _ensure_open(self) -> None:
        if self._state == RequestState.CLOSED:
            raise AMQPUsageError("Request has been shut down")

    async def connect(self) -> AbstractChannel:
        """Connect if needed and return the channel."""
        self._ensure_open()
        channel = await self._connection_manager.connect()
        if self._state == RequestState.UNCONNECTED:
            self._state = RequestState.CONNECTED
        return channel

    async def declare(self) -> QueueInfo | None:
        """Declare exchange, queue and bindings; returns the queue snapshot."""
        channel = await self.connect()
        topology = await TopologyDeclarator(self._config, channel).declare()
        self._exchange = topology.exchange
        self._queue = topology.queue
        self._queue_info = topology.queue_info
        self._state = RequestState.DECLARED
        return self._queue_info

    async def bind(self, routing_keys: Iterable[str]) -> int:
        """Add bindings for the declared queue on the configured exchange."""
        if self._queue is None or self._exchange is None:
            raise AMQPUsageError("No queue declared: call setup() first")
        declarator = TopologyDeclarator(self._config, self.channel)
        return await declarator.bind(self._queue, self._exchange, routing_keys)

    async def setup(self) -> "Request":
        """Run connect and declare, leaving the Request ready for use."""
        self._ensure_open()
        if self._state != RequestState.READY:
            await self.declare()
            self._state = RequestState.READY
            logger.debug(
                "Request ready",
                exchange=self._config.exchange,
                queue=self._queue_info.name if self._queue_info else None,
            )
        return self

    async def shutdown(self) -> None:
        """Release the connection if owned. Safe to call more than once."""
        if self._state == RequestState.CLOSED:
            return
        self._state = RequestState.CLOSED
        self._exchange = None
        self._queue = None
        if self._owns_connection:
            await self._connection_manager.shutdown()
