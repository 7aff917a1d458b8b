import logging
import logging.config
from invoice_service.core.config import get_settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers that are chatty at INFO
QUIET_LOGGERS = ("azure", "httpx", "openai", "aiohttp.access")

def setup_logging(level: str = None):
    """Configure root logging for the service"""
    settings = get_settings()
    level = (level or settings.LOG_LEVEL).upper()
    if settings.DEBUG:
        level = "DEBUG"

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {"format": LOG_FORMAT},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
            },
        },
        "root": {
            "handlers": ["console"],
            "level": level,
        },
        "loggers": {
            name: {"level": "WARNING"} for name in QUIET_LOGGERS
        },
    })
