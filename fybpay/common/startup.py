"""Startup-time config logging with secrets redacted."""

from fybpay.common.config import CommonSettings
from fybpay.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token", "dsn", "redis_url", "webhook_url")


def redacted_config(config: CommonSettings) -> dict[str, object]:
    """Settings as a dict, with every secret-looking field masked."""

    values = {}
    for name, value in config.model_dump().items():
        if any(marker in name for marker in SECRET_MARKERS):
            values[name] = "<redacted>" if value else "<unset>"
        else:
            values[name] = value
    return values


def log_startup_config(config: CommonSettings, component: str) -> None:
    logger.info("startup component=%s config=%s", component, redacted_config(config))
