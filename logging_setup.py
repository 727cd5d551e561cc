import logging
import os
from collections import deque
from logging.handlers import RotatingFileHandler

import config

_FMT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level_name: str | None = None, log_file: str | None = None) -> None:
    """Console + rotating file logging. Safe to call more than once."""
    level_name = (level_name or config.LOG_LEVEL).upper()
    level = getattr(logging, level_name, logging.INFO)
    log_file = config.LOG_FILE if log_file is None else log_file

    formatter = logging.Formatter(fmt=_FMT, datefmt=_DATEFMT)
    handlers: list[logging.Handler] = []

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        directory = os.path.dirname(os.path.abspath(log_file))
        os.makedirs(directory, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    # discord.py is chatty at INFO (gateway heartbeats, resumes)
    logging.getLogger("discord").setLevel(max(level, logging.WARNING))


def tail_log(lines: int, log_file: str | None = None) -> list[str]:
    """Return the last `lines` lines of the log file (empty if it doesn't exist)."""
    log_file = config.LOG_FILE if log_file is None else log_file
    if lines <= 0 or not log_file or not os.path.exists(log_file):
        return []
    with open(log_file, "r", encoding="utf-8", errors="replace") as f:
        return [line.rstrip("\n") for line in deque(f, maxlen=lines)]
