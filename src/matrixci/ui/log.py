"""Logging setup for the matrixci CLI."""

from __future__ import annotations

import logging
import sys


class ColoredFormatter(logging.Formatter):
    """Adds level colours when writing to a terminal."""

    cyan = "\x1b[36m"
    green = "\x1b[32m"
    yellow = "\x1b[33m"
    red = "\x1b[31m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"

    format_str = "%(asctime)s | %(levelname)-8s | %(message)s"

    COLORS = {
        logging.DEBUG: cyan,
        logging.INFO: green,
        logging.WARNING: yellow,
        logging.ERROR: red,
        logging.CRITICAL: bold_red,
    }

    def __init__(self, use_color: bool = True):
        super().__init__(self.format_str, datefmt="%H:%M:%S")
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        color = self.COLORS.get(record.levelno)
        if not self.use_color or not color:
            return text
        return f"{color}{text}{self.reset}"


def setup_logging(level: int | str = logging.INFO, stream=None) -> logging.Logger:
    """
    Configure the `matrixci` logger tree.

    Only the package logger is touched so embedding applications keep their
    own root configuration.
    """
    stream = stream or sys.stderr
    logger = logging.getLogger("matrixci")

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(ColoredFormatter(use_color=hasattr(stream, "isatty") and stream.isatty()))
    logger.addHandler(handler)
    logger.setLevel(level)
    return logger
