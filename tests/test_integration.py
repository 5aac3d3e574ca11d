"""Integration tests using Testcontainers or external RabbitMQ."""

import asyncio
import logging
import socket
import uuid

import aio_pika
import pytest
import pytest_asyncio
from testcontainers.core.container import DockerContainer
from testcontainers.core.waiting_utils import wait_for_logs

from rmq_client.client import AMQPClient
from rmq_client.config import AmqpProperties, Settings
from rmq_client.models import ConsumeResult

logger = logging.getLogger(__name__)


def is_port_open(host: str, port: int) -> bool:
    """Check if a TCP port is open."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.settimeout(1)
        return s.connect_ex((host, port)) == 0


@pytest.fixture(scope="module")
def rabbitmq_address():
    """Provide (host, port) of a running RabbitMQ."""
    if is_port_open("localhost", 5672):
        logger.info("Using existing RabbitMQ instance on localhost:5672")
        yield "localhost", 5672
        return

    logger.info("Falling back to Testcontainers (DockerContainer)...")
    try:
        container = DockerContainer("rabbitmq:4.0-management").with_exposed_ports(5672)
        container.start()
    except Exception as e:
        pytest.skip(f"No RabbitMQ available: {e}")

    try:
        wait_for_logs(container, "Server startup complete", timeout=60)
        yield container.get_container_host_ip(), int(container.get_exposed_port(5672))
    finally:
        container.stop()


@pytest.fixture
def names():
    suffix = uuid.uuid4().hex[:8]
    return {
        "exchange": f"test.integration.ex.{suffix}",
        "queue": f"test.integration.q.{suffix}",
        "dlx": f"test.integration.dlx.{suffix}",
        "dlq": f"test.integration.dlq.{suffix}",
    }


@pytest.fixture
def base(rabbitmq_address, names):
    host, port = rabbitmq_address
    return AmqpProperties(
        host=host,
        port=port,
        exchange=names["exchange"],
        exchange_type="topic",
        exchange_durable=False,
        exchange_auto_delete=True,
        queue_durable=False,
        connection_name="rmq-client-tests",
    )


@pytest.fixture
def client(base):
    return AMQPClient(settings=Settings(_env_file=None), base=base)


@pytest_asyncio.fixture
async def raw_channel(rabbitmq_address, names):
    """Plain aio-pika channel for setup and inspection; deletes test queues afterwards."""
    host, port = rabbitmq_address
    connection = await aio_pika.connect(host=host, port=port)
    async with connection:
        yield await connection.channel()

        cleanup = await connection.channel()
        for name in (names["queue"], names["dlq"]):
            try:
                await cleanup.queue_delete(name)
            except aio_pika.exceptions.ChannelClosed:
                cleanup = await connection.channel()


async def ready_count(channel, queue: str, expected: int | None = None, attempts: int = 50) -> int:
    """Passively declare a queue and return its ready count, polling for `expected`."""
    count = -1
    for _ in range(attempts):
        declared = await channel.declare_queue(queue, passive=True)
        count = declared.declaration_result.message_count
        if expected is None or count == expected:
            break
        await asyncio.sleep(0.1)
    return count


@pytest.mark.asyncio
async def test_publish_consume_end_to_end(client, names, raw_channel):
    """Publish to orders.created, consume exactly one message, queue drained."""
    topology = {"queue": names["queue"], "routing": "orders.created"}

    assert await client.publish("orders.created", "order-1", topology) is True
    assert await ready_count(raw_channel, names["queue"], expected=1) == 1

    bodies = []

    async def handler(message, resolver):
        bodies.append(message.text)
        await resolver.acknowledge(message)

    result = await client.consume(names["queue"], handler, {**topology, "message_limit": 1})

    assert result == ConsumeResult.LIMIT_REACHED
    assert bodies == ["order-1"]
    assert await ready_count(raw_channel, names["queue"], expected=0) == 0


@pytest.mark.asyncio
async def test_mandatory_unroutable_returns_false(client):
    assert await client.publish("no.such.route", "lost", mandatory=True) is False


@pytest.mark.asyncio
async def test_mandatory_routed_returns_true(client, names, raw_channel):
    topology = {"queue": names["queue"], "routing": "orders.created"}
    assert await client.publish("orders.created", "order-1", topology, mandatory=True) is True


@pytest.mark.asyncio
async def test_message_limit_consumes_exactly_n(client, names, raw_channel):
    topology = {"queue": names["queue"], "routing": "jobs"}
    for i in range(5):
        client.batch_basic_publish("jobs", f"job-{i}")
    assert await client.batch_publish(topology) == 5
    await ready_count(raw_channel, names["queue"], expected=5)

    seen = []

    async def handler(message, resolver):
        seen.append(message.text)
        await resolver.acknowledge(message)

    result = await client.consume(
        names["queue"],
        handler,
        {**topology, "message_limit": 3, "qos": True, "qos_prefetch_count": 1},
    )

    assert result == ConsumeResult.LIMIT_REACHED
    assert seen == ["job-0", "job-1", "job-2"]
    assert await ready_count(raw_channel, names["queue"], expected=2) == 2


@pytest.mark.asyncio
async def test_reject_with_requeue_redelivers(client, names, raw_channel):
    topology = {"queue": names["queue"], "routing": "retry"}
    await client.publish("retry", "try-again", topology, mandatory=True)

    seen = []

    async def handler(message, resolver):
        seen.append((message.text, message.redelivered))
        if message.redelivered:
            await resolver.acknowledge(message)
        else:
            await resolver.reject(message, requeue=True)

    await client.consume(names["queue"], handler, {**topology, "message_limit": 2, "timeout": 5})

    assert seen == [("try-again", False), ("try-again", True)]


@pytest.mark.asyncio
async def test_reject_without_requeue_dead_letters(client, names, raw_channel):
    dlx = await raw_channel.declare_exchange(names["dlx"], aio_pika.ExchangeType.FANOUT, auto_delete=True)
    dlq = await raw_channel.declare_queue(names["dlq"], auto_delete=False)
    await dlq.bind(dlx)

    topology = {
        "queue": names["queue"],
        "routing": "dead",
        "queue_arguments": {"x-dead-letter-exchange": names["dlx"]},
    }
    await client.publish("dead", "poison", topology, mandatory=True)

    async def handler(message, resolver):
        await resolver.reject(message, requeue=False)

    await client.consume(names["queue"], handler, {**topology, "message_limit": 1})

    assert await ready_count(raw_channel, names["dlq"], expected=1) == 1
    assert await ready_count(raw_channel, names["queue"], expected=0) == 0


@pytest.mark.asyncio
async def test_non_persistent_consumer_on_empty_queue(client, names, raw_channel):
    result = await client.consume(names["queue"], lambda m, r: None, {"persistent": False})
    assert result == ConsumeResult.QUEUE_EMPTY


@pytest.mark.asyncio
async def test_rpc_round_trip(client, names, raw_channel):
    exchange = await raw_channel.declare_exchange(
        names["exchange"], aio_pika.ExchangeType.TOPIC, auto_delete=True
    )
    server_queue = await raw_channel.declare_queue(names["queue"], durable=False)
    await server_queue.bind(exchange, routing_key="rpc.ping")

    async def serve(message, resolver):
        await resolver.reply(message, b"pong:" + message.body)
        await resolver.acknowledge(message)

    server = asyncio.create_task(
        client.consume(names["queue"], serve, {"message_limit": 1, "timeout": 10})
    )
    try:
        assert await client.rpc("rpc.ping", b"ping", timeout=10) == b"pong:ping"
    finally:
        await server


@pytest.mark.asyncio
async def test_rpc_times_out_without_server(client):
    assert await client.rpc("rpc.nobody", b"ping", timeout=0.5) is None


@pytest.mark.asyncio
async def test_precondition_failure_propagates(client, names, raw_channel):
    await raw_channel.declare_queue(names["queue"], durable=False, arguments={"x-max-length": 10})

    with pytest.raises(aio_pika.exceptions.ChannelPreconditionFailed):
        await client.publish(
            "k",
            "x",
            {"queue": names["queue"], "queue_arguments": {"x-max-length": 20}},
        )
