"""Broker connection, delivery and topology settings.

Environment variables use the ``RABBITMQ_`` prefix and ``__`` as the nested
delimiter, e.g.::

    RABBITMQ_HOST=rabbit.internal
    RABBITMQ_MAX_RETRY_ATTEMPTS=5
    RABBITMQ_DEAD_LETTER__QUEUE_NAME=registry-dead-letters
    RABBITMQ_QUEUES__scan__NAME=security-scan
    RABBITMQ_QUEUES__scan__EXCHANGE=commands
    RABBITMQ_QUEUES__scan__ROUTING_KEY=scan.server

``RABBITMQ_CONNECTION_URL`` takes a complete ``amqp://`` or ``amqps://`` URL and
replaces the host, port, credential and virtual host fields.
"""

from __future__ import annotations

from urllib.parse import quote, urlencode, urlsplit, urlunsplit

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .topology import (
    DeadLetterDefinition,
    ExchangeDefinition,
    QueueDefinition,
    RouteDefinition,
    default_exchanges,
)


class MessagingSettings(BaseSettings):
    """RabbitMQ connection, delivery and topology settings."""

    model_config = SettingsConfigDict(
        env_prefix="RABBITMQ_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    # ─────────────────────────────────────────────────────
    # Connection parameters
    # ─────────────────────────────────────────────────────
    host: str = Field(default="localhost", min_length=1, max_length=255)
    port: int = Field(default=5672, ge=1, le=65535)
    virtual_host: str = Field(default="/", min_length=1)
    username: str = Field(default="guest", min_length=1)
    password: SecretStr = Field(default=SecretStr("guest"))
    use_ssl: bool = False
    connection_name: str = Field(default="reliable-messaging", min_length=1)
    # Full AMQP URL (RABBITMQ_CONNECTION_URL); overrides the fields above.
    connection_url: SecretStr | None = None

    # ─────────────────────────────────────────────────────
    # Timeouts (seconds)
    # ─────────────────────────────────────────────────────
    connection_timeout: float = Field(default=30.0, gt=0)
    heartbeat: int = Field(default=60, ge=0, le=3600)
    request_timeout: float = Field(default=30.0, gt=0)
    health_check_timeout: float = Field(default=5.0, gt=0)
    shutdown_timeout: float = Field(default=30.0, gt=0)

    # ─────────────────────────────────────────────────────
    # Publishing / consuming
    # ─────────────────────────────────────────────────────
    publisher_confirms: bool = True
    persistent_messages: bool = True
    prefetch_count: int = Field(default=10, ge=1, le=65535)
    channel_pool_size: int = Field(default=10, ge=1)

    # ─────────────────────────────────────────────────────
    # Message retry
    # ─────────────────────────────────────────────────────
    max_retry_attempts: int = Field(default=3, ge=1)
    base_retry_delay: float = Field(default=5.0, ge=0)
    max_retry_delay: float = Field(default=300.0, ge=0)
    retry_jitter: bool = False

    # ─────────────────────────────────────────────────────
    # Connection retry
    # ─────────────────────────────────────────────────────
    connection_retry_attempts: int = Field(default=5, ge=1)
    reconnect_base_delay: float = Field(default=1.0, ge=0)
    reconnect_max_delay: float = Field(default=30.0, ge=0)

    # ─────────────────────────────────────────────────────
    # Topology
    # ─────────────────────────────────────────────────────
    dead_letter: DeadLetterDefinition = Field(default_factory=DeadLetterDefinition)
    exchanges: dict[str, ExchangeDefinition] = Field(default_factory=default_exchanges)
    queues: dict[str, QueueDefinition] = Field(default_factory=dict)
    routes: dict[str, RouteDefinition] = Field(default_factory=dict)
    delay_queue_prefix: str = Field(default="delayed", min_length=1)

    @model_validator(mode="after")
    def _check_delays(self) -> MessagingSettings:
        if self.base_retry_delay > self.max_retry_delay:
            raise ValueError("base_retry_delay must be <= max_retry_delay")
        if self.reconnect_base_delay > self.reconnect_max_delay:
            raise ValueError("reconnect_base_delay must be <= reconnect_max_delay")
        return self

    @field_validator("connection_url")
    @classmethod
    def _check_connection_url(cls, value: SecretStr | None) -> SecretStr | None:
        if value is None:
            return None
        parts = urlsplit(value.get_secret_value())
        if parts.scheme not in ("amqp", "amqps") or not parts.hostname:
            raise ValueError("connection_url must be an amqp:// or amqps:// URL")
        return value

    def _build_url(self, password: str) -> str:
        scheme = "amqps" if self.use_ssl else "amqp"
        user = quote(self.username, safe="")
        vhost = quote(self.virtual_host, safe="")
        query = urlencode({"heartbeat": self.heartbeat})
        return f"{scheme}://{user}:{password}@{self.host}:{self.port}/{vhost}?{query}"

    @property
    def url(self) -> str:
        """AMQP URL; ``connection_url`` wins over the component fields."""
        if self.connection_url is not None:
            return self.connection_url.get_secret_value()
        return self._build_url(quote(self.password.get_secret_value(), safe=""))

    @property
    def safe_url(self) -> str:
        """URL with the password masked, for logs."""
        if self.connection_url is None:
            return self._build_url("***")
        parts = urlsplit(self.connection_url.get_secret_value())
        if parts.password is None:
            return parts.geturl()
        userinfo, hostport = parts.netloc.rsplit("@", 1)
        user = userinfo.split(":", 1)[0]
        return urlunsplit(parts._replace(netloc=f"{user}:***@{hostport}"))
