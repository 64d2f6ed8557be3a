"""
Thread offloading for blocking database work in the async workers.

Every service method that opens a SQLAlchemy session is synchronous; async
callers go through run_io_task so one chain's slow transaction never stalls
another chain's tick on the event loop.
"""

import asyncio
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


class BackgroundTaskRunner:
    """Offloads blocking calls to the default thread pool"""

    async def run_io(self, fn: Callable, *args, **kwargs) -> Any:
        """Execute a blocking function in the default thread pool"""
        return await asyncio.to_thread(fn, *args, **kwargs)


_global_runner = BackgroundTaskRunner()


async def run_io_task(fn: Callable, *args, **kwargs) -> Any:
    """Execute a blocking function without blocking the event loop"""
    return await _global_runner.run_io(fn, *args, **kwargs)


__all__ = ['BackgroundTaskRunner', 'run_io_task']
