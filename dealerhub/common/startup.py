"""One structured log line describing the effective configuration at boot."""

from pydantic_settings import BaseSettings

from dealerhub.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def _redact(name: str, value) -> object:
    if any(marker in name.lower() for marker in SECRET_MARKERS):
        return "<set>" if value else "<unset>"
    return value


def log_startup_config(config: BaseSettings, fields: list[str]) -> None:
    """Log the chosen settings fields; secret-looking names only report whether they are set.

    Values come from the settings object, so `.env` overrides are reflected.
    """

    snapshot = {name: _redact(name, getattr(config, name)) for name in fields}
    logger.info("startup_config", extra={"startup_config": snapshot})
