"""In-memory stand-ins for the aio-pika objects the client touches."""

import asyncio
import itertools
from types import SimpleNamespace
from typing import Callable
from unittest.mock import AsyncMock, patch

import pytest

from rmq_client.config import AmqpProperties, EffectiveConfig, resolve_properties


class FakeIncoming:
    """Delivered message with ack/reject recorded instead of sent."""

    def __init__(self, body: bytes, delivery_tag: int, queue: "FakeQueue | None" = None, **props):
        self.body = body
        self.delivery_tag = delivery_tag
        self.routing_key = props.pop("routing_key", "")
        self.exchange = props.pop("exchange", "")
        self.redelivered = props.pop("redelivered", False)
        self.headers = props.pop("headers", None) or {}
        for name in (
            "correlation_id",
            "reply_to",
            "message_id",
            "content_type",
            "content_encoding",
            "delivery_mode",
            "priority",
            "timestamp",
            "type",
            "app_id",
            "user_id",
            "consumer_tag",
        ):
            setattr(self, name, props.pop(name, None))
        self._queue = queue
        self.acked = False
        self.rejected = False
        self.requeued = False

    async def ack(self, multiple: bool = False) -> None:
        self.acked = True

    async def reject(self, requeue: bool = False) -> None:
        self.rejected = True
        self.requeued = requeue
        if requeue and self._queue is not None:
            self._queue.put(
                FakeIncoming(
                    self.body,
                    self._queue.broker.next_tag(),
                    self._queue,
                    routing_key=self.routing_key,
                    exchange=self.exchange,
                    redelivered=True,
                    correlation_id=self.correlation_id,
                    reply_to=self.reply_to,
                    headers=self.headers,
                )
            )


class FakeQueueIterator:
    def __init__(self, queue: "FakeQueue"):
        self._queue = queue
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._queue.close_when_empty and self._queue.ready.empty():
            raise StopAsyncIteration
        return await self._queue.ready.get()


class FakeQueue:
    def __init__(self, broker: "FakeBroker", name: str):
        self.broker = broker
        self.name = name
        self.ready: asyncio.Queue = asyncio.Queue()
        self.bindings: list[tuple[str, str]] = []
        self.iterator_kwargs: list[dict] = []
        self.close_when_empty = False
        self.declare_kwargs: dict = {}

    @property
    def declaration_result(self):
        return SimpleNamespace(message_count=self.ready.qsize(), consumer_count=0)

    def put(self, message: FakeIncoming) -> None:
        self.ready.put_nowait(message)

    def put_body(self, body: bytes, **props) -> FakeIncoming:
        message = FakeIncoming(body, self.broker.next_tag(), self, **props)
        self.put(message)
        return message

    async def bind(self, exchange, routing_key: str = "", **kwargs) -> None:
        name = exchange if isinstance(exchange, str) else exchange.name
        self.bindings.append((name, routing_key))
        self.broker.bindings.setdefault((name, routing_key), []).append(self.name)

    def iterator(self, **kwargs) -> FakeQueueIterator:
        self.iterator_kwargs.append(kwargs)
        return FakeQueueIterator(self)


class FakeExchange:
    def __init__(self, broker: "FakeBroker", name: str, channel: "FakeChannel"):
        self.broker = broker
        self.name = name
        self.channel = channel

    async def publish(self, message, routing_key: str, mandatory: bool = False, **kwargs):
        return await self.broker.route(self, message, routing_key, mandatory)


class FakeBroker:
    """Routes by exact (exchange, routing key) match and the default exchange."""

    def __init__(self):
        self.queues: dict[str, FakeQueue] = {}
        self.bindings: dict[tuple[str, str], list[str]] = {}
        self.published: list[tuple[str, str, object, bool]] = []
        self.declared_exchanges: list[dict] = []
        self.on_publish: Callable | None = None
        self.confirmation: object = None
        self.publish_error: Exception | None = None
        self._tags = itertools.count(1)
        self._names = itertools.count(1)

    def next_tag(self) -> int:
        return next(self._tags)

    def queue(self, name: str) -> FakeQueue:
        if name not in self.queues:
            self.queues[name] = FakeQueue(self, name)
        return self.queues[name]

    def generated_name(self) -> str:
        return f"amq.gen-{next(self._names)}"

    async def route(self, exchange: FakeExchange, message, routing_key: str, mandatory: bool):
        self.published.append((exchange.name, routing_key, message, mandatory))
        if self.publish_error is not None:
            raise self.publish_error

        if exchange.name == "":
            targets = [routing_key] if routing_key in self.queues else []
        else:
            targets = self.bindings.get((exchange.name, routing_key), [])

        for name in targets:
            self.queues[name].put_body(
                message.body,
                routing_key=routing_key,
                exchange=exchange.name,
                correlation_id=message.correlation_id,
                reply_to=message.reply_to,
                headers=dict(message.headers or {}),
            )

        if self.on_publish is not None:
            self.on_publish(exchange.name, routing_key, message)

        if exchange.channel.publisher_confirms:
            return self.confirmation
        return None


class FakeChannel:
    def __init__(self, broker: FakeBroker, publisher_confirms: bool = False, **kwargs):
        self.broker = broker
        self.publisher_confirms = publisher_confirms
        self.open_kwargs = kwargs
        self.is_closed = False
        self.default_exchange = FakeExchange(broker, "", self)
        self.set_qos = AsyncMock()

    async def close(self) -> None:
        self.is_closed = True

    async def declare_exchange(self, name, type="direct", **kwargs) -> FakeExchange:
        self.broker.declared_exchanges.append({"name": name, "type": type, **kwargs})
        return FakeExchange(self.broker, name, self)

    async def get_exchange(self, name, ensure=True) -> FakeExchange:
        return FakeExchange(self.broker, name, self)

    async def declare_queue(self, name=None, **kwargs) -> FakeQueue:
        queue = self.broker.queue(name or self.broker.generated_name())
        queue.declare_kwargs = kwargs
        return queue

    async def get_queue(self, name, ensure=True) -> FakeQueue:
        return self.broker.queue(name)


class FakeConnection:
    def __init__(self, broker: FakeBroker):
        self.broker = broker
        self.is_closed = False
        self.channels: list[FakeChannel] = []

    async def channel(self, publisher_confirms: bool = True, **kwargs) -> FakeChannel:
        channel = FakeChannel(self.broker, publisher_confirms=publisher_confirms, **kwargs)
        self.channels.append(channel)
        return channel

    async def close(self) -> None:
        self.is_closed = True


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def connections(broker):
    """Patch aio_pika.connect; yields the list of opened fake connections."""
    opened: list[FakeConnection] = []

    async def connect(**kwargs):
        connection = FakeConnection(broker)
        connection.connect_kwargs = kwargs
        opened.append(connection)
        return connection

    with patch("rmq_client.connection.aio_pika.connect", new=AsyncMock(side_effect=connect)):
        yield opened


@pytest.fixture
def base_properties() -> AmqpProperties:
    return AmqpProperties(exchange="test.exchange", exchange_type="topic")


@pytest.fixture
def make_config(base_properties) -> Callable[..., EffectiveConfig]:
    def factory(**overrides) -> EffectiveConfig:
        return resolve_properties(base_properties, overrides)

    return factory


@pytest.fixture
def channel(broker) -> FakeChannel:
    return FakeChannel(broker)


@pytest.fixture
def make_incoming() -> Callable[..., FakeIncoming]:
    """Build a standalone delivery; pass a queue to enable requeueing."""
    tags = itertools.count(1000)

    def factory(body: bytes = b"", delivery_tag: int | None = None, queue: FakeQueue | None = None, **props):
        return FakeIncoming(body, delivery_tag or next(tags), queue, **props)

    return factory
