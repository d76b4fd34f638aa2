from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "postgresql+asyncpg://postgres:postgres@db:5432/orders"
    log_level: str = "INFO"

    # Kafka
    kafka_bootstrap_servers: str = "kafka:9092"

    # Collaborators (all optional; unset means demo mode)
    carrier_api_token: str = ""
    carrier_warehouse_id: str = "1"
    carrier_api_base: str = "https://apiv2.shiprocket.in/v1"
    notification_api_key: str = ""
    notification_endpoint: str = ""
    notification_from: str = "noreply@budgetbucket.com"
    collaborator_timeout_seconds: float = 10.0

    # Contact form messages are delivered here
    support_email: str = "support@budgetbucket.com"

    # Observability
    otlp_endpoint: str = "http://jaeger:4318/v1/traces"

    model_config = {"env_file": ".env"}


settings = Settings()
