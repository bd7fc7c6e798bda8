"""Thread pool bridge for blocking calls made from the event loop.

Hardware probes, native module imports, model downloads and the native
inference call itself all block. They run here so other requests on the
same event loop keep moving.
"""
import asyncio
import functools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Thread pool for blocking operations
_io_executor: Optional[ThreadPoolExecutor] = None


def get_io_executor(max_workers: int = 8) -> ThreadPoolExecutor:
    """Get or create the shared thread pool executor.

    Args:
        max_workers: Maximum worker threads (only used on creation)

    Returns:
        ThreadPoolExecutor for blocking operations
    """
    global _io_executor
    if _io_executor is None:
        _io_executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="subforge_io")
    return _io_executor


def shutdown_executor() -> None:
    """Shutdown the executor gracefully."""
    global _io_executor
    if _io_executor:
        _io_executor.shutdown(wait=True)
        _io_executor = None


async def run_blocking(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking callable in the shared pool and await its result."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        get_io_executor(), functools.partial(func, *args, **kwargs)
    )


async def run_detached(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking callable on its own daemon thread and await its result.

    For calls that may never return. If the awaiting side gives up, the
    thread is abandoned; it holds no shared pool worker and does not delay
    interpreter exit.
    """
    loop = asyncio.get_running_loop()
    future = loop.create_future()

    def _settle(setter: Callable[[Any], None], value: Any) -> None:
        if not future.done():
            setter(value)

    def _target() -> None:
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            outcome = (future.set_exception, e)
        else:
            outcome = (future.set_result, result)
        try:
            loop.call_soon_threadsafe(_settle, *outcome)
        except RuntimeError:
            logger.debug(f"Detached call {getattr(func, '__name__', func)!r} finished after its loop closed")

    name = f"subforge_{getattr(func, '__name__', 'call')}"
    threading.Thread(target=_target, name=name, daemon=True).start()
    return await future
