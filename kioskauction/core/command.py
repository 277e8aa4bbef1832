"""
Provides support for the Command pattern
"""
from abc import ABC, abstractmethod
from logging import Logger
from typing import TypeVar, Generic

from kioskauction.core.logging import get_logger

Args = TypeVar("Args")

Result = TypeVar("Result")


class AsyncCommand(Generic[Args, Result], ABC):
    """
    Commands are invoked as functions, and awaited
    """

    @abstractmethod
    async def __call__(self, args: Args) -> Result:
        """
        Executes the command
        """

    def get_logger(self, name: str | None = None) -> Logger:
        """
        Returns a logger using the class name as the logger name.
        If `name` is specifed, then it is appended to the class name: `{self.__class__.__name__}.{name}`
        """
        return get_logger(self, name)
