"""Message and result models for the AMQP client core."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Mapping, Optional

from aio_pika import Message
from aio_pika.abc import AbstractIncomingMessage
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from rmq_client.config import AmqpProperties
from rmq_client.exceptions import AMQPUsageError


class DeliveryMode(IntEnum):
    """AMQP Delivery Mode."""
    TRANSIENT = 1
    PERSISTENT = 2


class ConsumeResult(str, Enum):
    """How a consume loop terminated."""

    STOPPED = "stopped"
    LIMIT_REACHED = "limit_reached"
    TIMED_OUT = "timed_out"
    QUEUE_EMPTY = "queue_empty"


class MessageProperties(BaseModel):
    """Basic properties attached to an outgoing message."""

    model_config = ConfigDict(extra="forbid")

    content_type: Optional[str] = Field(None, description="MIME type of the body")
    content_encoding: Optional[str] = Field(None, description="Body encoding, e.g. gzip")
    delivery_mode: Optional[DeliveryMode] = Field(None, description="1=Transient, 2=Persistent")
    priority: Optional[int] = Field(None, ge=0, le=255, description="Message priority")
    correlation_id: Optional[str] = Field(None, description="Request-Response identifier")
    reply_to: Optional[str] = Field(None, description="Queue the reply should be sent to")
    message_id: Optional[str] = Field(None, description="Unique message ID for deduplication")
    timestamp: Optional[datetime] = None
    type: Optional[str] = None
    user_id: Optional[str] = None
    app_id: Optional[str] = None
    expiration: Optional[float] = Field(None, gt=0, description="Per-message TTL in seconds")
    headers: Optional[dict[str, Any]] = Field(None, description="Custom AMQP headers")


PropertiesLike = MessageProperties | Mapping[str, Any] | None


def coerce_properties(properties: PropertiesLike) -> MessageProperties:
    """Accept a MessageProperties instance, a plain mapping, or None."""
    if properties is None:
        return MessageProperties()
    if isinstance(properties, MessageProperties):
        return properties
    try:
        return MessageProperties.model_validate(dict(properties))
    except ValidationError as e:
        raise AMQPUsageError(f"Invalid message properties: {e}") from e


class MessageFactory:
    """Builds aio-pika messages with profile defaults applied.

    Defaults come from the profile (content type, delivery mode, application
    headers); explicit properties win over them. Per-message headers are
    layered over the application headers.
    """

    def __init__(
        self,
        content_type: str = "text/plain",
        delivery_mode: DeliveryMode = DeliveryMode.PERSISTENT,
        application_headers: Mapping[str, Any] | None = None,
    ):
        self.content_type = content_type
        self.delivery_mode = DeliveryMode(delivery_mode)
        self.application_headers = dict(application_headers or {})

    @classmethod
    def from_config(cls, config: AmqpProperties) -> "MessageFactory":
        return cls(
            content_type=config.content_type,
            delivery_mode=DeliveryMode(config.delivery_mode),
            application_headers=config.application_headers,
        )

    def create(self, body: bytes | str | Message, properties: PropertiesLike = None) -> Message:
        """Create a message; an existing aio-pika Message passes through untouched."""
        if isinstance(body, Message):
            return body
        if isinstance(body, str):
            body = body.encode("utf-8")
        elif not isinstance(body, (bytes, bytearray)):
            raise AMQPUsageError(f"Message body must be bytes or str, got {type(body).__name__}")

        props = coerce_properties(properties)
        values = props.model_dump(exclude_none=True)

        headers = dict(self.application_headers)
        headers.update(values.pop("headers", {}))

        values.setdefault("content_type", self.content_type)
        values.setdefault("delivery_mode", self.delivery_mode)

        return Message(bytes(body), headers=headers, **values)

    def create_with_properties(self, body: bytes | str, **properties: Any) -> Message:
        """Keyword shortcut for :meth:`create`."""
        return self.create(body, properties)


@dataclass(frozen=True)
class QueueInfo:
    """Queue declaration snapshot; refreshed only by declaring again."""

    name: str
    message_count: int = 0
    consumer_count: int = 0


@dataclass(frozen=True)
class ReceivedMessage:
    """Read-only view of a delivered message.

    The underlying aio-pika message is kept in ``raw`` so a Resolver can
    acknowledge or reject it.
    """

    body: bytes
    delivery_tag: int
    routing_key: str
    exchange: str
    redelivered: bool
    correlation_id: str | None = None
    reply_to: str | None = None
    message_id: str | None = None
    content_type: str | None = None
    content_encoding: str | None = None
    delivery_mode: int | None = None
    priority: int | None = None
    timestamp: datetime | None = None
    type: str | None = None
    app_id: str | None = None
    user_id: str | None = None
    consumer_tag: str | None = None
    headers: dict[str, Any] = field(default_factory=dict, hash=False)
    raw: AbstractIncomingMessage | None = field(default=None, repr=False, compare=False)

    @classmethod
    def from_incoming(cls, message: AbstractIncomingMessage) -> "ReceivedMessage":
        delivery_mode = message.delivery_mode
        return cls(
            body=message.body,
            delivery_tag=message.delivery_tag,
            routing_key=message.routing_key or "",
            exchange=message.exchange or "",
            redelivered=bool(message.redelivered),
            correlation_id=message.correlation_id,
            reply_to=message.reply_to,
            message_id=message.message_id,
            content_type=message.content_type,
            content_encoding=message.content_encoding,
            delivery_mode=int(delivery_mode) if delivery_mode is not None else None,
            priority=message.priority,
            timestamp=message.timestamp,
            type=message.type,
            app_id=message.app_id,
            user_id=message.user_id,
            consumer_tag=message.consumer_tag,
            headers=dict(message.headers or {}),
            raw=message,
        )

    @property
    def text(self) -> str:
        """Body decoded as UTF-8."""
        return self.body.decode("utf-8")
