"""
Provides the standard for building asyncio services
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from enum import IntEnum, auto
from typing import Coroutine, Any


class ServiceLifecycleState(IntEnum):
    """
    Service lifecycle states

    Normal service lifecycle: NEW -> STARTING -> RUNNING -> STOPPING -> STOPPED

    A stopped service can be restarted, i.e., STOPPED -> STARTING
    """

    NEW = auto()

    STARTING = auto()

    START_FAILED = auto()

    RUNNING = auto()

    STOPPING = auto()

    STOPPED = auto()


@dataclass(slots=True)
class ServiceError(Exception):
    """
    Base class for service lifecycle errors
    """

    service_name: str
    cause: Exception | str

    def __str__(self) -> str:
        return f"[{self.service_name}] [{self.__class__.__name__}] {self.cause}"


class ServiceStartError(ServiceError):
    """
    Service failed to start
    """


class ServiceStopError(ServiceError):
    """
    Error occurred while trying to stop the service.
    """


class AsyncService(ABC):
    """
    Services that run on the asyncio event loop.

    Subclasses override `_start` and `_stop`. Long-running work is launched via `_spawn`, which keeps track of the
    task so that it is cancelled when the service stops. If a spawned task dies with an error, the error is logged
    and the service keeps its RUNNING state, i.e., the task is responsible for its own resilience.
    """

    def __init__(self):
        self.__state = ServiceLifecycleState.NEW
        self._logger = logging.getLogger(self.__class__.__name__)

        self.__running = asyncio.Event()
        self.__stopped = asyncio.Event()
        self.__tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> ServiceLifecycleState:
        return self.__state

    @property
    def running(self) -> bool:
        """
        :return: True is service is running
        """
        return self.__state == ServiceLifecycleState.RUNNING

    @property
    def stopped(self) -> bool:
        """
        :return: True if service is stopped
        """
        return self.__state == ServiceLifecycleState.STOPPED

    @property
    def name(self) -> str:
        """
        By default, the type class name is used.
        """
        return self.__class__.__name__

    async def await_running(self, timeout: timedelta | None = None):
        """
        Used to await the service is running
        """
        if timeout:
            await asyncio.wait_for(self.__running.wait(), timeout.total_seconds())
        else:
            await self.__running.wait()

    async def await_stopped(self, timeout: timedelta | None = None):
        """
        Used to await service shutdown
        """
        if timeout:
            await asyncio.wait_for(self.__stopped.wait(), timeout.total_seconds())
        else:
            await self.__stopped.wait()

    async def start(self):
        """
        Notes
        -----
        - The service can only be started when service state in [NEW, STOPPED]
        - When state is in [RUNNING, STARTING], then this is a noop
        - If an error occurs while starting, then the service is stopped to give it a chance to clean up,
          and ServiceStartError is raised
        """
        if self.__state in (
            ServiceLifecycleState.RUNNING,
            ServiceLifecycleState.STARTING,
        ):
            return

        if self.__state not in [ServiceLifecycleState.NEW, ServiceLifecycleState.STOPPED]:
            raise ServiceStartError(
                self.name,
                f"service cannot be started when state is: {self.__state}",
            )

        self.__set_state(ServiceLifecycleState.STARTING)
        try:
            await self._start()
            self.__set_state(ServiceLifecycleState.RUNNING)
        except Exception as err:
            self.__set_state(ServiceLifecycleState.START_FAILED)
            await self.stop()
            raise ServiceStartError(self.name, "error occurred while starting") from err

    async def stop(self):
        """
        Stop the service

        Notes
        -----
        - The service can only be stopped when state is in [RUNNING, START_FAILED, NEW]
        - When state in [STOPPED, STOPPING], then this is a noop
        - spawned tasks are cancelled before the `_stop` hook runs
        """
        if self.__state in (
            ServiceLifecycleState.STOPPED,
            ServiceLifecycleState.STOPPING,
        ):
            return

        if self.__state == ServiceLifecycleState.STARTING:
            raise ServiceStopError(
                self.name,
                f"service cannot be stopped when state is: {self.__state}",
            )

        if self.__state == ServiceLifecycleState.NEW:
            self.__set_state(ServiceLifecycleState.STOPPED)
            return

        self.__set_state(ServiceLifecycleState.STOPPING)
        try:
            await self.__cancel_tasks()
            await self._stop()
        except Exception as err:
            raise ServiceStopError(self.name, "error occurred while stopping") from err
        finally:
            self.__set_state(ServiceLifecycleState.STOPPED)

    async def restart(self):
        """
        Used to restart the service.
        """
        if self.__state == ServiceLifecycleState.STARTING:
            await self.await_running()

        if self.running:
            await self.stop()

        await self.start()

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        """
        Launches a task that is owned by the service.
        """
        task = asyncio.create_task(coro, name=f"{self.name}.{name}")
        self.__tasks.add(task)
        task.add_done_callback(self.__on_task_done)
        return task

    def __on_task_done(self, task: asyncio.Task):
        self.__tasks.discard(task)
        if task.cancelled():
            return
        err = task.exception()
        if err:
            self._logger.error("task failed: %s", task.get_name(), exc_info=err)

    async def __cancel_tasks(self):
        tasks = list(self.__tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def __set_state(self, state: ServiceLifecycleState):
        self._logger.info("state transition: %s -> %s", self.__state.name, state.name)

        self.__state = state

        if state == ServiceLifecycleState.STARTING:
            self.__stopped.clear()
        if state == ServiceLifecycleState.RUNNING:
            self.__running.set()
        if state == ServiceLifecycleState.STOPPING:
            self.__running.clear()
        if state == ServiceLifecycleState.STOPPED:
            self.__stopped.set()

    @abstractmethod
    async def _start(self):
        """
        Service startup hook
        """

    @abstractmethod
    async def _stop(self):
        """
        Service shutdown hook
        """
