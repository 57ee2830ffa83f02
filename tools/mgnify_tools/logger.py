# mgnify_tools/logger.py

import logging

LOGGER_NAME = 'mgnify_tools'


def setup_logger(log_file=None, log_level=logging.INFO):
    """Setup logging."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_level)

    # Drop handlers from a previous call so messages are not duplicated
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def log_print(message, level="info"):
    """Log a message through the package logger."""
    logger = logging.getLogger(LOGGER_NAME)
    getattr(logger, level)(message)
