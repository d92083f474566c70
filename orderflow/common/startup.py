"""Startup-time config logging with secret redaction."""

from orderflow.common.config import CommonSettings
from orderflow.common.logging import logger

SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def redacted_settings(app_settings: CommonSettings) -> dict:
    """Every settings field; secret-like values masked, empty ones shown as unset."""

    config = {}
    for name in type(app_settings).model_fields:
        value = getattr(app_settings, name)
        if any(marker in name for marker in SECRET_MARKERS):
            value = "<redacted>" if value else "<unset>"
        config[name] = value
    return config


def log_startup_config(app_settings: CommonSettings) -> dict:
    """Log the effective configuration once at process start."""

    config = redacted_settings(app_settings)
    logger.info("startup_config service=%s config=%s", app_settings.service_name, config)
    return config
