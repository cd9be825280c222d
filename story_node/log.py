import logging
import sys

from colorama import init as colorama_init, Fore, Style

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LEVEL_COLORS = {
    logging.DEBUG: Style.DIM,
    logging.WARNING: Fore.YELLOW,
    logging.ERROR: Fore.RED,
    logging.CRITICAL: Style.BRIGHT + Fore.RED,
}


class ColorFormatter(logging.Formatter):
    """`[2024-01-01 12:00:00] message` with warnings and errors colored"""

    def __init__(self, use_color: bool = True):
        super().__init__("[%(asctime)s] %(message)s", datefmt=DATE_FORMAT)
        self.use_color = use_color

    def format(self, record):
        line = super().format(record)
        color = LEVEL_COLORS.get(record.levelno, "") if self.use_color else ""
        if not color:
            return line
        return f"{color}{line}{Style.RESET_ALL}"


def setup_logging(verbose: bool = False, stream=None) -> logging.Logger:
    colorama_init()
    stream = stream or sys.stdout
    handler = logging.StreamHandler(stream)
    handler.setFormatter(ColorFormatter(use_color=stream.isatty()))

    logger = logging.getLogger("story_node")
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    return logger


def banner(logger: logging.Logger, title: str):
    logger.info(f"* * * {title} * * *")
