# deptxfer/common/logger.py
# Logging setup shared by the server and client programs.

import logging
import sys

LOG_FORMAT = "%(asctime)s - %(threadName)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Root of every module logger in the package.
PACKAGE_LOGGER = "deptxfer"


def configure_logging(level=logging.INFO, log_file=None):
    """
    Send package log records to the console and, optionally, to a file.

    Calling this again replaces the handlers installed by a previous call.

    Parameters:
        level (int | str): Logging level, e.g. logging.DEBUG or "DEBUG".
        log_file (str | None): Append-mode log file path.

    Returns:
        logging.Logger: The package logger.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            raise ValueError("Unknown log level")

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # Records stop here; the root logger stays untouched.
    logger.propagate = False
    return logger
