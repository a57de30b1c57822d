import asyncio
from typing import Any, Awaitable, Callable, Optional

import database

_worker_loop: Optional[asyncio.AbstractEventLoop] = None


def worker_loop() -> asyncio.AbstractEventLoop:
    """Event loop shared by every task that runs in this worker process.

    Motor binds to the loop it first ran on, so a replacement loop also gets a
    fresh client.
    """
    global _worker_loop
    if _worker_loop is None or _worker_loop.is_closed():
        database.close_client()
        _worker_loop = asyncio.new_event_loop()
        asyncio.set_event_loop(_worker_loop)
    return _worker_loop


def run_async(coro: Awaitable[Any]) -> Any:
    return worker_loop().run_until_complete(coro)


def run_with_db(func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
    """Run ``func(db, *args, **kwargs)`` against the worker's database handle."""
    loop = worker_loop()
    return loop.run_until_complete(func(database.get_db(), *args, **kwargs))
