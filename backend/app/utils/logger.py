import logging

from app.core.config import settings

logger = logging.getLogger("nrss")
logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

console_handler = logging.StreamHandler()
formatter = logging.Formatter("[%(levelname)s] %(asctime)s - %(name)s - %(message)s", "%Y-%m-%d %H:%M:%S")
console_handler.setFormatter(formatter)
logger.addHandler(console_handler)


def configure_logging() -> logging.Logger:
    """Route the `app.*` module loggers through the nrss handler as well."""
    app_logger = logging.getLogger("app")
    app_logger.setLevel(logger.level)
    if console_handler not in app_logger.handlers:
        app_logger.addHandler(console_handler)
    return logger
