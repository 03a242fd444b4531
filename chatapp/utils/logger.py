import logging
import os

from ..config import get_settings

FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'


def setup_logger(name='chatapp'):
    """Set up a logger with console and file output.

    Creates a logger that writes:
    - the configured level (INFO by default) and above to console
    - DEBUG and above to file (<log_dir>/chatapp.log)

    Handlers are attached only once per logger name, so modules that share
    a name (or are imported twice) do not duplicate output.

    Args:
        name (str, optional): Logger name. Defaults to 'chatapp'

    Returns:
        logging.Logger: Configured logger instance

    Side Effects:
        - Creates log directory if it doesn't exist
        - Creates/appends to chatapp.log file
    """
    logger = logging.getLogger(name)
    if getattr(logger, '_chatapp_configured', False):
        return logger
    logger.setLevel(logging.DEBUG)
    settings = get_settings()

    formatter = logging.Formatter(FORMAT)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    # File handler - ensure log directory exists
    log_dir = settings.log_dir or os.path.join(os.path.dirname(os.path.dirname(__file__)), 'logs')
    os.makedirs(log_dir, exist_ok=True)
    file_handler = logging.FileHandler(os.path.join(log_dir, 'chatapp.log'))
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.DEBUG)

    logger.addHandler(console_handler)
    logger.addHandler(file_handler)
    logger.propagate = False
    logger._chatapp_configured = True

    return logger
