import asyncio
from typing import Any, Awaitable, Optional

from celery.signals import worker_process_init

_loop: Optional[asyncio.AbstractEventLoop] = None


def worker_loop() -> asyncio.AbstractEventLoop:
    """The event loop shared by every task in this worker process.

    The Motor client imported from server binds to the first loop it runs on,
    so tasks reuse one loop instead of opening a fresh one with asyncio.run().
    """
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
        asyncio.set_event_loop(_loop)
    return _loop


@worker_process_init.connect
def _forget_parent_loop(**_: Any) -> None:
    # A prefork child must not drive the loop object copied from its parent.
    global _loop
    _loop = None


def run_async(coro: Awaitable[Any]) -> Any:
    return worker_loop().run_until_complete(coro)
