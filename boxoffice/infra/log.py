import sys

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def configure_logging(level: str = "INFO") -> None:
    # one stderr sink, replacing loguru's default handler
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT,
               backtrace=False, diagnose=False)
