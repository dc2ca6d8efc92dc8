import logging
import sys
from logging.handlers import RotatingFileHandler

from rich.logging import RichHandler

LOGGER_NAME = "authproxy"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(settings) -> logging.Logger:
    """
    Build the process wide logger once and return it.

    Components receive the returned logger through their constructors instead
    of reaching for a module global. Werkzeug's request log is routed through
    the same handlers.
    """
    level = logging.DEBUG if settings.debug else logging.INFO

    if settings.log_format == "rich":
        console = RichHandler(rich_tracebacks=True, show_path=False)
        console.setFormatter(logging.Formatter("%(message)s"))
    else:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(logging.Formatter(LOG_FORMAT))
    handlers = [console]

    if settings.log_file:
        file_handler = RotatingFileHandler(settings.log_file, maxBytes=10 * 1024 * 1024, backupCount=3)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(file_handler)

    for name in (LOGGER_NAME, "werkzeug"):
        target = logging.getLogger(name)
        target.handlers.clear()
        for handler in handlers:
            target.addHandler(handler)
        target.setLevel(level)
        target.propagate = False

    return logging.getLogger(LOGGER_NAME)


def fields(**values) -> str:
    """Render key=value pairs for a log line."""
    return " ".join(f"{key}={value}" for key, value in values.items())
