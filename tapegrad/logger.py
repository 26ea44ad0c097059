import logging
import os
import sys


class ColorFormatter(logging.Formatter):
    """
    A logging formatter that colors each record by severity.

    Graph traces are emitted at DEBUG, so they render in cyan and are easy to tell
    apart from the INFO summaries emitted on disposal and kernel compilation.

    Examples:
        >>> import logging
        >>> from tapegrad.logger import ColorFormatter
        >>> handler = logging.StreamHandler()
        >>> handler.setFormatter(ColorFormatter())
        >>> logging.getLogger("tapegrad").addHandler(handler)
    """

    cyan = "\x1b[36;20m"
    green = "\x1b[32;20m"
    yellow = "\x1b[33;20m"
    red = "\x1b[31;20m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"

    FORMATS = {
        logging.DEBUG: cyan,
        logging.INFO: green,
        logging.WARNING: yellow,
        logging.ERROR: red,
        logging.CRITICAL: bold_red,
    }

    def format(self, record):
        """
        Format the record with the color assigned to its level.

        Args:
            record (logging.LogRecord): The log record to be formatted.

        Returns:
            str: The formatted message wrapped in ANSI color codes.
        """
        color = self.FORMATS.get(record.levelno, "")
        formatter = logging.Formatter(
            f"{color}%(asctime)s - %(name)s - %(levelname)s - %(message)s{self.reset}"
        )
        return formatter.format(record)


def setup_logger(name=None):
    """
    Configure a logger with colored console output on stdout.

    The level is DEBUG when the ``DEBUG`` environment variable is set, otherwise INFO.
    Calling this more than once for the same name keeps a single console handler.

    Args:
        name (str, optional): The name of the logger. Defaults to None (root logger).

    Returns:
        logging.Logger: The configured logger instance.

    Examples:
        >>> from tapegrad.logger import setup_logger
        >>> logger = setup_logger("tapegrad")
        >>> logger.info("graph disposed")
    """
    logger = logging.getLogger(name)
    level = logging.DEBUG if os.getenv("DEBUG") else logging.INFO
    logger.setLevel(level)

    if not any(
        isinstance(h, logging.StreamHandler)
        and isinstance(h.formatter, ColorFormatter)
        for h in logger.handlers
    ):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(ColorFormatter())
        logger.addHandler(console_handler)

    return logger
