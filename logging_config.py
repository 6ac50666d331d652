import logging
import logging.handlers
'''
Example for usage of logger.*
from logging_config import setup_logging

logger = setup_logging()
logger.info('Session created.')
logger.debug('[ARAP] iter 03 | diff = 1.2e-04')
'''

LOGGER_NAME = 'arap'


def setup_logging(log_file='arap.log', quiet: bool = False):
    """Configure the ``arap`` logger used by every module of the engine.

    The core modules only obtain child loggers (``arap.session`` ...);
    handlers are attached here, by the host, once.
    """
    logger = logging.getLogger(LOGGER_NAME)

    if logger.handlers:
        if quiet:
            logger.handlers = [h for h in logger.handlers
                               if not isinstance(h, logging.StreamHandler)
                               or isinstance(h, logging.FileHandler)]
        return logger

    logger.setLevel(logging.DEBUG)

    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    if log_file:
        file_handler = logging.handlers.RotatingFileHandler(log_file,
                                                            maxBytes=5_000_000,
                                                            backupCount=0)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if not quiet:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return logger
