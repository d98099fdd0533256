from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Eventhooks"
    app_env: str = "development"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "eventhooks"
    postgres_user: str = "eventhooks"
    postgres_password: str = "eventhooks"

    redis_host: str = "localhost"
    redis_port: int = 6379

    database_url: str | None = None
    redis_url: str | None = None
    database_pool_size: int = 10
    database_max_overflow: int = 20
    redis_socket_timeout_seconds: float = 2.0
    worker_heartbeat_key: str = "worker:heartbeat"
    worker_heartbeat_ttl_seconds: int = 45

    webhook_platform_name: str = "Forvara"
    webhook_request_timeout_seconds: float = 10.0
    webhook_max_concurrent_deliveries: int = 20
    webhook_response_body_max_chars: int = 1000
    webhook_retry_sweep_interval_seconds: float = 15.0
    webhook_retry_batch_size: int = 200
    webhook_pending_stale_after_seconds: float = 300.0
    webhook_pending_keepalive_seconds: float = 60.0
    webhook_default_max_retries: int = 3
    webhook_default_retry_delay_seconds: int = 60
    webhook_default_exponential_backoff: bool = True
    webhook_allow_http_endpoints: bool | None = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def sqlalchemy_database_uri(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def cache_redis_url(self) -> str:
        if self.redis_url:
            return self.redis_url
        return f"redis://{self.redis_host}:{self.redis_port}/0"

    @property
    def webhook_header_prefix(self) -> str:
        return f"X-{self.webhook_platform_name}"

    @property
    def webhook_user_agent(self) -> str:
        return f"{self.webhook_platform_name}-Webhooks/1.0"

    @property
    def http_endpoints_allowed(self) -> bool:
        if self.webhook_allow_http_endpoints is not None:
            return self.webhook_allow_http_endpoints
        return self.app_env != "production"


settings = Settings()
