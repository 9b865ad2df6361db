import logging
import os

from rich.logging import RichHandler


class CenteredFormatter(logging.Formatter):
    longest_name_length = 14  # grows with the longest logger name seen

    def __init__(self, fmt=None, datefmt=None, style="%", initial_width=14):
        super().__init__(fmt, datefmt, style)
        CenteredFormatter.longest_name_length = initial_width

    def format(self, record):
        CenteredFormatter.longest_name_length = max(
            CenteredFormatter.longest_name_length, len(record.name)
        )
        width = CenteredFormatter.longest_name_length
        # format a copy so other handlers still see the plain name
        record = logging.makeLogRecord(record.__dict__)
        record.name = record.name.center(width)
        return super().format(record)


def _level_from_env() -> int:
    if os.getenv("DEBUG"):
        return logging.DEBUG
    name = os.getenv("RAMIKART_LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def get_logger(name=None) -> logging.Logger:
    """
    Creates and returns a logger configured with RichHandler for rich output.
    """
    if name is None:
        name = "ramikart"
    logger = logging.getLogger(name)
    log_level = _level_from_env()
    logger.setLevel(log_level)

    if not logger.handlers:
        formatter = CenteredFormatter("[%(name)s]  %(message)s")

        console_handler = RichHandler(
            show_time=True,
            show_level=True,
            show_path=False,
            rich_tracebacks=True,
            log_time_format="[%X]",
        )
        console_handler.setFormatter(formatter)
        console_handler.setLevel(log_level)
        logger.addHandler(console_handler)

        logger.propagate = False
        logger.debug(f"Logger for '{name}' initialized with RichHandler.")

    return logger
