"""AMQP 0-9-1 client core: publishing, consuming and RPC on aio-pika."""

__version__ = "1.0.0"

from rmq_client.client import AMQPClient
from rmq_client.config import AmqpProperties, EffectiveConfig, PropertyResolver, Settings
from rmq_client.consumer import Consumer, ConsumerFactory
from rmq_client.exceptions import (
    AMQPClientError,
    AMQPConfigurationError,
    AMQPConnectionError,
    AMQPPublishError,
    AMQPUsageError,
)
from rmq_client.models import ConsumeResult, MessageFactory, MessageProperties, ReceivedMessage
from rmq_client.publisher import Publisher, PublisherFactory
from rmq_client.resolver import Resolver
from rmq_client.rpc import RpcClient

__all__ = [
    "AMQPClient",
    "AMQPClientError",
    "AMQPConfigurationError",
    "AMQPConnectionError",
    "AMQPPublishError",
    "AMQPUsageError",
    "AmqpProperties",
    "ConsumeResult",
    "Consumer",
    "ConsumerFactory",
    "EffectiveConfig",
    "MessageFactory",
    "MessageProperties",
    "PropertyResolver",
    "Publisher",
    "PublisherFactory",
    "ReceivedMessage",
    "Resolver",
    "RpcClient",
    "Settings",
]
