"""
Provides support for logging
"""

import logging
import time
from logging.handlers import QueueHandler, QueueListener
from queue import SimpleQueue
from typing import Any

from kioskauction.core.async_service import AsyncService

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"


def configure_logging(
    level: int = logging.WARNING,
    handlers: list[logging.Handler] | None = None,
):
    """
    Configures logging format and log level.

    :param level: default = logging.WARNING
    :return: None

    - log format: %(asctime)s [%(levelname)s] [%(name)s] %(message)s
    - timestamps are UTC
    - loggers are named after the class that owns them, see `get_logger`

    >>> configure_logging(level=logging.DEBUG)
    >>> logger = logging.getLogger('AuctionStateMachine')
    >>> logger.info('auction activated') # doctest: +SKIP
    2026-10-19 14:48:20,594 [INFO] [AuctionStateMachine] auction activated

    """
    logging.Formatter.converter = time.gmtime
    logging.basicConfig(
        format=LOG_FORMAT,
        level=level,
        handlers=handlers,
        force=True,
    )
    logging.captureWarnings(True)


def get_logger(obj: Any, name: str | None = None) -> logging.Logger:
    """
    Returns a logger using the class name as the logger name.
    If `name` is specifed, then it is appended to the class name: `{self.__class__.__name__}.{name}`
    """
    logger = logging.getLogger(obj.__class__.__name__)
    if name is None:
        return logger

    return logger.getChild(name)


class LoggingService(AsyncService):
    """
    Reconfigures logging so that handlers do their work on a listener thread instead of the event loop thread.
    """

    def __init__(
        self,
        level: int = logging.WARNING,
        handlers: list[logging.Handler] | None = None,
    ):
        super().__init__()
        self.level = level
        self.__handlers = handlers[:] if handlers else None
        self.__queue: SimpleQueue = SimpleQueue()
        self.__listener: QueueListener | None = None

    async def _start(self) -> None:
        configure_logging(self.level, self.__handlers)

        root = logging.getLogger()
        handlers: list[logging.Handler] = root.handlers[:]
        root.handlers.clear()
        root.addHandler(QueueHandler(self.__queue))  # type: ignore

        self.__listener = QueueListener(
            self.__queue,  # type: ignore
            *handlers,
            respect_handler_level=True,
        )
        self.__listener.start()

    async def _stop(self):
        if self.__listener:
            self.__listener.stop()
            self.__listener = None

        # restore direct handlers
        configure_logging(self.level, self.__handlers)
