"""
Thread offloading for blocking database work

The ledger store uses synchronous SQLAlchemy sessions. Async services call it
through run_io_task so the event loop keeps serving other accounts while a
query or commit is in flight.
"""

import asyncio
import logging
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_io_task(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking callable in the default thread pool and await its result"""
    return await asyncio.to_thread(fn, *args, **kwargs)
