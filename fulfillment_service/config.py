from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "postgresql+asyncpg://postgres:postgres@db:5432/orders"
    log_level: str = "INFO"

    # Kafka
    kafka_bootstrap_servers: str = "kafka:9092"
    kafka_consumer_group: str = "fulfillment-service"

    # Redelivery of a retryable trigger failure
    dispatch_max_attempts: int = 5
    dispatch_retry_backoff_seconds: float = 1.0

    # Idempotency lease: how long a claimed transition blocks a concurrent duplicate
    transition_lease_seconds: float = 600.0

    # Payment-failure reaper
    reaper_interval_seconds: float = 3600.0
    payment_failure_window_hours: float = 24.0

    # Collaborators (all optional; unset means demo mode)
    storage_bucket: str = ""
    invoice_renderer_url: str = ""
    carrier_api_token: str = ""
    carrier_warehouse_id: str = "1"
    carrier_api_base: str = "https://apiv2.shiprocket.in/v1"
    notification_api_key: str = ""
    notification_endpoint: str = ""
    notification_from: str = "noreply@budgetbucket.com"
    collaborator_timeout_seconds: float = 10.0

    # Observability
    otlp_endpoint: str = "http://jaeger:4318/v1/traces"
    metrics_port: int = 8001

    model_config = {"env_file": ".env"}


settings = Settings()
