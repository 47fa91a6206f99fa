"""Central environment-driven settings for the payment service.

The process loads this once at startup. Behavior is controlled by environment
variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "fybpay"
    log_level: str = "INFO"
    postgres_dsn: str
    redis_url: str = "redis://redis:6379/0"
    api_key: str
    app_url: str = "http://localhost:3000"
    otel_enabled: bool = False
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    rate_limit_per_minute: int = 30

    paystack_secret_key: str
    paystack_webhook_secret: str = ""
    paystack_base_url: str = "https://api.paystack.co"
    gateway_timeout_seconds: float = 5.0
    currency: str = "NGN"

    reconcile_timeout_seconds: float = 8.0
    processing_stale_seconds: int = 30

    resend_api_key: str = ""
    resend_base_url: str = "https://api.resend.com"
    receipt_from_email: str = "J-Star Projects <billing@jstarstudios.com>"
    discord_webhook_url: str = ""
    fallback_payer_email: str = "hey@jstarstudios.com"
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def webhook_secret(self) -> str:
        # Paystack signs webhooks with the secret key unless a dedicated one is set.
        return self.paystack_webhook_secret or self.paystack_secret_key


settings = CommonSettings()
