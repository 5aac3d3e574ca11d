"""Exception hierarchy for the AMQP client core.

Broker protocol errors raised by aio-pika (precondition failures, closed
channels) are not wrapped: they reach the caller unmodified.
"""


class AMQPClientError(Exception):
    """Base exception for AMQP client errors."""

    pass


class AMQPConfigurationError(AMQPClientError):
    """Raised when the effective configuration is invalid.

    Always raised before any network I/O takes place.
    """

    pass


class AMQPConnectionError(AMQPClientError):
    """Raised when connection to RabbitMQ fails."""

    pass


class AMQPPublishError(AMQPClientError):
    """Raised when waiting for publisher confirms times out."""

    pass


class AMQPUsageError(AMQPClientError):
    """Raised when the API is used incorrectly.

    Examples: resolving the same delivery twice, replying to a message
    without reply-to, or using a Request before setup.
    """

    pass
