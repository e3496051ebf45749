import logging

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logger(name, level=logging.INFO, log_file=None):
    """
    Set up a logger with the specified name and logging level.
    Optionally log to a file.
    
    Args:
        name (str): The name of the logger.
        level (int): The logging level (default is logging.INFO).
        log_file (str, optional): Path to log file. If provided, logs will be written to this file.
    
    Returns:
        logging.Logger: Configured logger instance.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False

    formatter = logging.Formatter(LOG_FORMAT)

    # Module-level loggers are configured at import and again by the daemon
    if not any(type(h) is logging.StreamHandler for h in logger.handlers):
        ch = logging.StreamHandler()
        ch.setFormatter(formatter)
        logger.addHandler(ch)

    if log_file:
        fh = logging.FileHandler(log_file, encoding='utf-8')
        fh.setFormatter(formatter)
        logger.addHandler(fh)

    for handler in logger.handlers:
        handler.setLevel(level)

    return logger


def configure_all(level=logging.INFO, log_file=None):
    """Apply level and optional log file to every juggler logger."""
    for name in LOGGER_NAMES:
        setup_logger(name, level, log_file)


core_logger = setup_logger("juggler.core", logging.INFO)
device_logger = setup_logger("juggler.device", logging.INFO)
process_logger = setup_logger("juggler.process", logging.INFO)

LOGGER_NAMES = ("juggler.core", "juggler.device", "juggler.process")
