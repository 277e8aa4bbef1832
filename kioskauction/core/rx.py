"""
Shared reactivex scheduler

Record change notifications and divergences are delivered on `default_scheduler`, i.e., on a thread pool thread.
Observers that drive asyncio code must hop back onto their event loop with `loop.call_soon_threadsafe`.
"""
import os

from reactivex.scheduler import ThreadPoolScheduler
from reactivex.scheduler.scheduler import Scheduler

NOTIFICATION_WORKERS = max(2, os.cpu_count() or 1)

default_scheduler: Scheduler = ThreadPoolScheduler(NOTIFICATION_WORKERS)
