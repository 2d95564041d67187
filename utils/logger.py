import sys
from loguru import logger

from config.settings import settings


def setup_logger(level: str = settings.LOG_LEVEL):
    """
    Configures the Loguru logger for the application.

    Default handlers are removed and a single stderr sink is added with a
    uniform format. The level comes from the 'LOG_LEVEL' setting unless one
    is passed explicitly.
    """
    logger.remove()

    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        ),
        colorize=True,
        backtrace=True,  # Show full stack trace on exceptions
        diagnose=False,  # Never dump local variables: they may hold API keys
    )

    return logger


# Other modules import this 'app_logger' to log messages.
app_logger = setup_logger()
