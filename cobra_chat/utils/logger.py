import logging
import sys

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Provides a configured logger instance."""
    logger = logging.getLogger(name)

    # Uvicorn --reload imports the app again; keep a single handler
    if not logger.handlers:
        logger.setLevel(level)

        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        logger.addHandler(handler)

    return logger


def set_log_level(level: str) -> None:
    """Applies LOG_LEVEL from settings ("DEBUG", "INFO", ...) to the shared logger."""
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        logger.warning(f"Unknown log level '{level}', keeping {logging.getLevelName(logger.level)}")
        return
    logger.setLevel(resolved)


logger = setup_logger("cobra_chat")
