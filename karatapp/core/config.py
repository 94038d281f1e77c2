"""Application configuration.

Settings are read from ``config.toml`` in the project root and can be
overridden with environment variables using ``__`` as the nested
delimiter (for example ``DATABASE__HOST=db`` or ``AUTH__BREACH_CHECK=false``).
"""

import tomllib
from pathlib import Path
from typing import Any, Literal
from urllib.parse import quote_plus

from pydantic import (
    BaseModel,
    Field,
    PostgresDsn,
    RedisDsn,
    ValidationError,
    computed_field,
)
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

CONFIG_FILE = Path(__file__).resolve().parent.parent.parent / "config.toml"

type RunMode = Literal["serve", "init", "cleanup"]


class AppConfig(BaseModel):
    """General application settings"""

    name: str = "Karatapp"
    version: str = "1.0.0"
    environment: Literal["development", "staging", "production"] = "development"


class DatabaseConfig(BaseModel):
    """Database connection settings"""

    host: str = "localhost"
    port: int = 5432
    username: str = "karatapp"
    password: str = "karatapp"
    db_name: str = "karatapp"
    echo: bool = False


class RedisConfig(BaseModel):
    """Redis connection settings"""

    host: str = "localhost"
    port: int = 6379
    username: str = ""
    password: str = ""
    db: int = 0


class CacheConfig(BaseModel):
    """Cache settings"""

    backend: Literal["memory", "redis"] = "memory"
    max_size: int = Field(100000, gt=0)
    image_list_ttl_seconds: int = Field(300, gt=0)


class BucketConfig(BaseModel):
    """Bucket names used by the storage layer.

    The forum buckets are lists of candidates; the first one that exists is
    used.
    """

    kata_images: str = "kata_images"
    ohyo_images: str = "ohyo_images"
    forum_images: list[str] = Field(default_factory=lambda: ["FORUM_IMAGES", "forum_images"], min_length=1)
    forum_files: list[str] = Field(default_factory=lambda: ["FORUM_FILES", "forum_files"], min_length=1)
    avatars: str = "user-avatars"


class StorageConfig(BaseModel):
    """Object storage settings"""

    backend: Literal["local", "memory"] = "local"
    root_dir: Path = Path("data/storage")
    public_base_url: str = "http://localhost:8080"
    signing_secret: str = "change-me"
    forum_url_expires_seconds: int = Field(31536000, gt=0)
    preview_url_expires_seconds: int = Field(7200, gt=0)
    avatar_url_expires_seconds: int = Field(3600, gt=0)
    max_avatar_bytes: int = Field(5 * 1024 * 1024, gt=0)
    max_video_bytes: int = Field(50 * 1024 * 1024, gt=0)
    buckets: BucketConfig = Field(default_factory=BucketConfig)


class AuthConfig(BaseModel):
    """Authentication settings"""

    access_token_ttl_seconds: int = Field(3600, gt=0)
    refresh_token_ttl_seconds: int = Field(30 * 24 * 3600, gt=0)
    session_max_age_days: int = Field(30, gt=0)
    min_password_length: int = Field(6, gt=0)
    enforce_password_policy: bool = True
    breach_check: bool = True
    breach_api_url: str = "https://api.pwnedpasswords.com/range"
    breach_timeout_seconds: float = Field(10.0, gt=0)


class RetryConfig(BaseModel):
    """Retry policy for backend calls"""

    max_retries: int = Field(3, ge=0)
    initial_delay: float = Field(1.0, ge=0)
    multiplier: float = Field(2.0, ge=1)
    max_delay: float = Field(30.0, gt=0)
    jitter: float = Field(0.1, ge=0)


class RateLimitConfig(BaseModel):
    """Outbound request limits"""

    rps: int = Field(10, gt=0)
    concurrency: int = Field(8, gt=0)


class EventsConfig(BaseModel):
    """Content event publishing settings"""

    transport: Literal["redis", "websocket", "none"] = "none"
    stream_prefix: str = "karatapp:events"
    max_len: int = Field(10000, gt=0)
    timeout_ms: int = Field(2000, gt=0)
    max_retries: int = Field(5, gt=0)
    retry_backoff_ms: int = Field(200, gt=0)


class ServerConfig(BaseModel):
    """HTTP API settings"""

    host: str = "localhost"
    port: int = 8080
    ws_path: str = "/ws"
    ws_requires_auth: bool = False
    metrics_port: int | None = 9100
    monitor_interval_seconds: float = Field(5.0, gt=0)


class LocalSettingsConfig(BaseModel):
    """Local key-value settings file"""

    path: Path = Path("data/settings.json")


class PydanticConfig(BaseSettings):
    """Aggregate settings model"""

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    app: AppConfig = Field(default_factory=AppConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    settings: LocalSettingsConfig = Field(default_factory=LocalSettingsConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            TomlConfigSettingsSource(settings_cls),
        )

    @computed_field
    @property
    def database_url(self) -> PostgresDsn:
        """PostgreSQL connection URL for the asyncpg driver"""
        return PostgresDsn(
            f"postgresql+asyncpg://{quote_plus(self.database.username)}:{quote_plus(self.database.password)}"
            f"@{self.database.host}:{self.database.port}/{self.database.db_name}"
        )

    @computed_field
    @property
    def redis_url(self) -> RedisDsn:
        """Redis connection URL"""
        if self.redis.username and self.redis.password:
            return RedisDsn(
                f"redis://{quote_plus(self.redis.username)}:{quote_plus(self.redis.password)}"
                f"@{self.redis.host}:{self.redis.port}/{self.redis.db}"
            )
        if self.redis.password:
            return RedisDsn(
                f"redis://:{quote_plus(self.redis.password)}@{self.redis.host}:{self.redis.port}/{self.redis.db}"
            )
        return RedisDsn(f"redis://{self.redis.host}:{self.redis.port}/{self.redis.db}")


class TomlConfigSettingsSource(PydanticBaseSettingsSource):
    """Settings source backed by config.toml"""

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        raise NotImplementedError

    def __call__(self) -> dict[str, Any]:
        if not CONFIG_FILE.exists():
            return {}
        with CONFIG_FILE.open("rb") as f:
            return tomllib.load(f)


class Config:
    """Application configuration facade.

    Wraps the pydantic settings model and exposes the values the rest of the
    code needs as read-only properties.

    Attributes:
        pydantic_config (PydanticConfig): the validated settings model
        mode (RunMode): process run mode ('serve', 'init' or 'cleanup')
    """

    pydantic_config: PydanticConfig
    mode: RunMode

    def __init__(self, mode: RunMode = "serve", **overrides: Any):
        """Load and validate the configuration.

        Precedence: keyword overrides, then environment variables, then
        config.toml.

        Args:
            mode: process run mode.
            **overrides: section values, e.g. ``storage={"backend": "memory"}``.
        """
        try:
            self.pydantic_config = PydanticConfig(**overrides)
        except ValidationError as e:
            raise ValueError(f"Invalid configuration: {e}") from e

        self.mode = mode

    @property
    def app_name(self) -> str:
        return self.pydantic_config.app.name

    @property
    def environment(self) -> str:
        return self.pydantic_config.app.environment

    @property
    def is_production(self) -> bool:
        return self.pydantic_config.app.environment == "production"

    @property
    def database_url(self) -> str:
        """Database connection URL."""
        return str(self.pydantic_config.database_url)

    @property
    def database_echo(self) -> bool:
        return self.pydantic_config.database.echo

    @property
    def redis_url(self) -> str:
        """Redis connection URL."""
        return str(self.pydantic_config.redis_url)

    @property
    def cache_backend(self) -> Literal["memory", "redis"]:
        return self.pydantic_config.cache.backend

    @property
    def cache_max_size(self) -> int:
        return self.pydantic_config.cache.max_size

    @property
    def image_list_ttl_seconds(self) -> int:
        """How long a bucket listing of item images stays cached."""
        return self.pydantic_config.cache.image_list_ttl_seconds

    @property
    def storage(self) -> StorageConfig:
        return self.pydantic_config.storage

    @property
    def buckets(self) -> BucketConfig:
        return self.pydantic_config.storage.buckets

    @property
    def auth(self) -> AuthConfig:
        return self.pydantic_config.auth

    @property
    def retry(self) -> RetryConfig:
        return self.pydantic_config.retry

    @property
    def rps_limit(self) -> int:
        """Outbound requests per second."""
        return self.pydantic_config.rate_limit.rps

    @property
    def concurrency_limit(self) -> int:
        """Maximum concurrent outbound requests."""
        return self.pydantic_config.rate_limit.concurrency

    @property
    def events(self) -> EventsConfig:
        return self.pydantic_config.events

    @property
    def events_transport(self) -> Literal["redis", "websocket", "none"]:
        return self.pydantic_config.events.transport

    @property
    def server(self) -> ServerConfig:
        return self.pydantic_config.server

    @property
    def local_settings_path(self) -> Path:
        return self.pydantic_config.settings.path
