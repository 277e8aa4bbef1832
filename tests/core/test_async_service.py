import asyncio
import unittest

from kioskauction.core.async_service import (
    AsyncService,
    ServiceLifecycleState,
    ServiceStartError,
    ServiceStopError,
)
from tests.test_support import KioskAuctionIsolatedAsyncioTestCase


class Foo(AsyncService):
    def __init__(
        self,
        start_err: Exception | None = None,
        stop_err: Exception | None = None,
    ):
        super().__init__()
        self.start_err = start_err
        self.stop_err = stop_err
        self.ticks = 0

    async def _start(self):
        if self.start_err:
            raise self.start_err

    async def _stop(self):
        if self.stop_err:
            raise self.stop_err

    async def tick_forever(self):
        while True:
            self.ticks += 1
            await asyncio.sleep(0.001)


class AsyncServiceTestCase(KioskAuctionIsolatedAsyncioTestCase):
    async def test_service_lifecycle(self):
        logger = self.get_logger("test_service_lifecycle")

        foo = Foo()
        self.assertEqual(ServiceLifecycleState.NEW, foo.state)

        await foo.start()
        await foo.await_running()
        self.assertEqual(ServiceLifecycleState.RUNNING, foo.state)

        await foo.stop()
        await foo.await_stopped()
        self.assertEqual(ServiceLifecycleState.STOPPED, foo.state)

        with self.subTest("stopped service can be restarted"):
            await foo.start()
            await foo.await_running()
            self.assertEqual(ServiceLifecycleState.RUNNING, foo.state)

        with self.subTest("running service can be restarted"):
            await foo.restart()
            await foo.await_running()
            self.assertEqual(ServiceLifecycleState.RUNNING, foo.state)

        with self.subTest("when service fails to start, ServiceStartError is raised"):
            foo = Foo(start_err=Exception("BOOM!"))
            with self.assertRaises(ServiceStartError) as err:
                await foo.start()
            logger.error(err.exception)
            self.assertTrue(foo.stopped)

        with self.subTest("when service fails to stop, ServiceStopError is raised"):
            foo = Foo(stop_err=Exception("BOOM!"))
            await foo.start()
            await foo.await_running()

            with self.assertRaises(ServiceStopError) as err:
                await foo.stop()
            logger.error(err.exception)
            self.assertTrue(foo.stopped)

    async def test_spawned_tasks_are_cancelled_on_stop(self):
        foo = Foo()
        await foo.start()
        task = foo._spawn(foo.tick_forever(), "tick")  # pylint: disable=protected-access
        await asyncio.sleep(0.01)
        self.assertGreater(foo.ticks, 0)

        await foo.stop()
        self.assertTrue(task.cancelled())
        ticks = foo.ticks
        await asyncio.sleep(0.01)
        self.assertEqual(ticks, foo.ticks)

    async def test_failed_task_does_not_stop_service(self):
        async def boom():
            raise ValueError("BOOM!")

        foo = Foo()
        await foo.start()
        task = foo._spawn(boom(), "boom")  # pylint: disable=protected-access
        with self.assertLogs("Foo", level="ERROR"):
            await asyncio.gather(task, return_exceptions=True)
            await asyncio.sleep(0)
        self.assertTrue(foo.running)
        await foo.stop()


if __name__ == "__main__":
    unittest.main()
