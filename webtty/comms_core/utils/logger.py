import logging
from logging.handlers import RotatingFileHandler, QueueHandler, QueueListener
from queue import Queue
from typing import Optional, Tuple

# Create a queue for logging
__log_queue = Queue()

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


# Configure the root logger
def setup_logger(level: int | str = logging.INFO,
                 log_file: Optional[str] = "webtty.log",
                 console: bool = True) -> Tuple[logging.Logger, QueueListener]:
    """
    Route every log record through a queue to the file and console handlers.

    The interactive client passes ``console=False``: the local terminal is in
    raw mode and log lines written to it would corrupt the remote screen.

    Returns:
        The root logger and the started listener; stop the listener on exit
        so queued records are flushed.
    """
    # Create a parent logger
    _logger = logging.getLogger()
    _logger.setLevel(logging.DEBUG)
    for handler in list(_logger.handlers):
        if isinstance(handler, QueueHandler):
            _logger.removeHandler(handler)

    # Create a handler for the queue
    queue_handler = QueueHandler(__log_queue)

    # Create a formatter that includes the logger name (module name)
    formatter = logging.Formatter(LOG_FORMAT)

    handlers = []
    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    if log_file:
        file_handler = RotatingFileHandler(
            log_file, maxBytes=1024 * 1024, backupCount=5
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        handlers.append(logging.NullHandler())

    # Create a QueueListener to process logs in a separate thread
    _listener = QueueListener(__log_queue, *handlers, respect_handler_level=True)

    # Add the handlers to the logger
    _logger.addHandler(queue_handler)
    _listener.start()

    # Third-party clients are chatty at DEBUG
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.INFO)

    return _logger, _listener
