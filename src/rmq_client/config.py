"""Configuration module using Pydantic v2 and Pydantic Settings.

Provides:
- AmqpProperties: the typed base connection/topology profile
- EffectiveConfig: the immutable, validated result of merging overrides
- PropertyResolver: merges per-call overrides over the original base profile
- Settings: environment/.env backed application settings
"""

from functools import lru_cache
from types import MappingProxyType
from typing import Any, Literal, Mapping

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from rmq_client.exceptions import AMQPConfigurationError

EXCHANGE_TYPES = frozenset({"topic", "direct", "fanout", "headers"})
PLUGIN_EXCHANGE_PREFIX = "x-"

# Queue types that RabbitMQ only accepts as durable, shared queues
REPLICATED_QUEUE_TYPES = frozenset({"quorum", "stream"})

MAP_FIELDS = (
    "ssl_options",
    "exchange_arguments",
    "queue_arguments",
    "consumer_arguments",
    "application_headers",
)

DEFAULT_PUBLISH_TIMEOUT = 30.0


def is_valid_exchange_type(exchange_type: str) -> bool:
    """Check an exchange type against the built-in set or a plugin prefix."""
    if exchange_type in EXCHANGE_TYPES:
        return True
    return exchange_type.startswith(PLUGIN_EXCHANGE_PREFIX) and len(exchange_type) > len(
        PLUGIN_EXCHANGE_PREFIX
    )


class AmqpProperties(BaseModel):
    """Connection and topology profile.

    Unknown keys are rejected. Map-typed fields (``queue_arguments`` and
    friends) are replaced wholesale by overrides, never merged key by key.
    """

    model_config = ConfigDict(extra="forbid")

    # Connection
    host: str = Field(default="localhost", description="Broker hostname")
    port: int = Field(default=5672, ge=1, le=65535, description="Broker AMQP port")
    username: str = Field(default="guest", description="Broker login")
    password: SecretStr = Field(default=SecretStr("guest"), description="Broker password")
    vhost: str = Field(default="/", description="Virtual host")
    ssl: bool = Field(default=False, description="Use TLS for the broker connection")
    ssl_options: dict[str, Any] = Field(
        default_factory=dict,
        description="aio-pika SSL options (cafile, certfile, keyfile, no_verify_ssl)",
    )
    connection_timeout: float = Field(default=3.0, gt=0, description="Connect timeout in seconds")
    heartbeat: int = Field(default=60, ge=0, description="Heartbeat interval in seconds")
    connection_name: str | None = Field(default=None, description="Client-provided connection name")

    # Exchange
    exchange: str = Field(default="amq.topic", description="Exchange name")
    exchange_type: str = Field(default="topic", description="Exchange type")
    exchange_passive: bool = False
    exchange_durable: bool = True
    exchange_auto_delete: bool = False
    exchange_internal: bool = False
    exchange_arguments: dict[str, Any] = Field(default_factory=dict)

    # Queue
    queue: str | None = Field(
        default=None,
        description="Queue name; None skips queue declaration, '' asks for a server-generated name",
    )
    queue_force_declare: bool = Field(
        default=False,
        description="Declare a server-named queue even when no queue name is set",
    )
    queue_passive: bool = False
    queue_durable: bool = True
    queue_exclusive: bool = False
    queue_auto_delete: bool = False
    queue_arguments: dict[str, Any] = Field(default_factory=dict)

    # Routing
    routing: tuple[str, ...] = Field(
        default=(),
        description="Routing keys; each one produces one queue binding",
    )

    # Consumer
    consumer_tag: str | None = None
    consumer_no_ack: bool = False
    consumer_exclusive: bool = False
    consumer_arguments: dict[str, Any] = Field(default_factory=dict)
    qos: bool = Field(default=False, description="Apply basic.qos before consuming")
    qos_prefetch_count: int = Field(default=1, ge=0, le=65535)
    qos_prefetch_size: int = Field(default=0, ge=0)
    qos_global: bool = False
    timeout: float = Field(
        default=0.0,
        ge=0,
        description="Idle seconds to wait for the next delivery; 0 waits forever",
    )
    persistent: bool = Field(
        default=True,
        description="Keep consuming when the queue is empty at start",
    )
    message_limit: int | None = Field(default=None, ge=1)
    shutdown_signal: str | None = Field(
        default=None,
        description="Message body that stops the consume loop once acknowledged",
    )

    # Publishing
    publish_timeout: float = Field(
        default=DEFAULT_PUBLISH_TIMEOUT,
        description="Seconds to wait for confirms; non-positive falls back to the default",
    )
    mandatory: bool = False
    content_type: str = "text/plain"
    delivery_mode: Literal[1, 2] = 2
    application_headers: dict[str, Any] = Field(default_factory=dict)

    # RPC
    rpc_reply_queue: str | None = Field(
        default=None,
        description="Shared reply queue; None declares a fresh exclusive queue per call",
    )

    @field_validator("routing", mode="before")
    @classmethod
    def _normalize_routing(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, str):
            value = value.split(",")
        if isinstance(value, (list, tuple)):
            for key in value:
                if not isinstance(key, str):
                    raise ValueError(f"Routing keys must be strings, got {type(key).__name__}")
            return tuple(key.strip() for key in value if key.strip())
        return value

    @property
    def effective_publish_timeout(self) -> float:
        """Publish confirm timeout with the non-positive fallback applied."""
        if self.publish_timeout <= 0:
            return DEFAULT_PUBLISH_TIMEOUT
        return self.publish_timeout

    @property
    def declares_queue(self) -> bool:
        """Whether setup issues a queue declaration.

        ``queue_force_declare`` with no queue name declares a server-named queue.
        """
        return self.queue is not None or self.queue_force_declare

    @property
    def connection_url_masked(self) -> str:
        """Return the connection URL with the password masked for logging."""
        scheme = "amqps" if self.ssl else "amqp"
        return f"{scheme}://{self.username}:****@{self.host}:{self.port}/{self.vhost.lstrip('/')}"


class EffectiveConfig(AmqpProperties):
    """Immutable, validated configuration for a single Request.

    Map-typed fields are exposed as read-only mapping proxies.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="after")
    def _validate_topology(self) -> "EffectiveConfig":
        if not self.exchange:
            raise ValueError("Please check your settings, exchange is not defined.")

        if not is_valid_exchange_type(self.exchange_type):
            raise ValueError(
                f"Invalid exchange type '{self.exchange_type}'. Allowed: "
                f"{', '.join(sorted(EXCHANGE_TYPES))} or a '{PLUGIN_EXCHANGE_PREFIX}' plugin type"
            )

        queue_type = self.queue_arguments.get("x-queue-type")
        if queue_type in REPLICATED_QUEUE_TYPES:
            conflicts = [
                name
                for name, enabled in (
                    ("queue_auto_delete", self.queue_auto_delete),
                    ("queue_exclusive", self.queue_exclusive),
                )
                if enabled
            ]
            if conflicts:
                raise ValueError(
                    f"x-queue-type={queue_type} conflicts with "
                    + ", ".join(f"{name}=True" for name in conflicts)
                )

        for name in MAP_FIELDS:
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))
        return self

    @field_serializer(*MAP_FIELDS)
    def _serialize_map(self, value: Mapping[str, Any]) -> dict[str, Any]:
        return dict(value)


def resolve_properties(
    base: AmqpProperties | Mapping[str, Any],
    overrides: Mapping[str, Any] | None = None,
) -> EffectiveConfig:
    """Merge overrides over a base profile into a validated EffectiveConfig.

    Keys are replaced, not deep-merged. The base is never modified.

    Raises:
        AMQPConfigurationError: If the merged configuration is invalid.
    """
    if isinstance(base, BaseModel):
        data = base.model_dump()
    else:
        data = dict(base)
    data.update(overrides or {})

    try:
        return EffectiveConfig.model_validate(data)
    except ValidationError as e:
        raise AMQPConfigurationError(f"Invalid AMQP configuration: {e}") from e


class PropertyResolver:
    """Resolves per-call overrides against one fixed base profile."""

    def __init__(self, base: AmqpProperties | Mapping[str, Any] | None = None):
        if base is None:
            base = AmqpProperties()
        elif not isinstance(base, AmqpProperties):
            try:
                base = AmqpProperties.model_validate(dict(base))
            except ValidationError as e:
                raise AMQPConfigurationError(f"Invalid AMQP base profile: {e}") from e
        self._base = base

    @property
    def base(self) -> AmqpProperties:
        return self._base

    def resolve(self, overrides: Mapping[str, Any] | None = None) -> EffectiveConfig:
        return resolve_properties(self._base, overrides)


class Settings(BaseSettings):
    """Application configuration with validation.

    All settings are loaded from environment variables with optional .env file
    support. The AMQP profile is nested: ``RMQ_AMQP__HOST``, ``RMQ_AMQP__EXCHANGE``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="RMQ_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    amqp: AmqpProperties = Field(
        default_factory=AmqpProperties,
        description="Base connection and topology profile",
    )

    # Logging Configuration
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="text",
        description="Log output format (json for production, text for development)",
    )
    log_file: str | None = Field(
        default=None,
        description="Path to log file. If None, logs only to stdout.",
    )
    log_rotation: str = Field(
        default="500 MB",
        description="Log rotation condition (size, time, etc.)",
    )
    log_retention: str = Field(
        default="10 days",
        description="Log retention duration",
    )

    app_name: str = Field(
        default="rmq-client",
        description="Application name used for logging and the AMQP connection name",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
