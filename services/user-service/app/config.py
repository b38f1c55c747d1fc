"""
Configuration management using Pydantic BaseSettings.
All values can be overridden via environment variables or a .env file.
"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── Relational store (TiDB / MySQL protocol) ───────────────────────────
    database_url: str = "mysql+aiomysql://root:@tidb:4000/user_service"
    db_pool_size: int = 20
    db_max_overflow: int = 10

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    # ── Redis ──────────────────────────────────────────────────────────────
    redis_host: str = "redis"
    redis_port: int = 6379
    profile_cache_ttl: int = 3600          # user:profile:{id}
    relationship_cache_ttl: int = 600      # follow:{id}:followers / :following
    cache_generation_ttl: int = 86400      # {key}:gen counters

    # ── Kafka ──────────────────────────────────────────────────────────────
    kafka_bootstrap_servers: str = "kafka:9092"
    kafka_topic_user_followed: str = "user-followed"
    kafka_topic_user_unfollowed: str = "user-unfollowed"
    kafka_topic_dead_letter: str = "dead-letter-queue"
    kafka_topic_user_created: str = "user-created"
    kafka_consumer_group: str = "user-service"
    kafka_request_timeout_ms: int = 10_000
    kafka_retry_backoff_ms: int = 200
    identity_sync_enabled: bool = True

    # ── Auth ───────────────────────────────────────────────────────────────
    # Tokens are issued by the auth service; this service only verifies them.
    jwt_secret_key: str = "change-me"
    jwt_algorithm: str = "HS256"
    service_token_secret: str = "service-secret"

    # ── Relationships ──────────────────────────────────────────────────────
    follow_transaction_timeout: float = 5.0
    default_page_size: int = 20
    max_page_size: int = 100
    background_drain_timeout: float = 10.0

    # ── Profile validation ─────────────────────────────────────────────────
    min_username_length: int = 3
    max_username_length: int = 30
    max_bio_length: int = 500
    max_display_name_length: int = 100
    max_avatar_url_length: int = 500
    reserved_usernames: list[str] = [
        "admin", "api", "www", "mail", "ftp",
        "localhost", "root", "null", "undefined",
    ]

    # ── Observability ──────────────────────────────────────────────────────
    otel_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://jaeger:4317"
    service_name: str = "user-service"
    environment: str = "development"
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
