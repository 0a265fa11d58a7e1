import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

import structlog
import tenacity

from dropbin.exceptions import StorageUnavailable
from dropbin.utils.async_utils import Timer

T = TypeVar("T")


class Repo:
    """
    Shared plumbing for the storage adapters.

    `_call` bounds a backend coroutine by `timeout` and turns any of
    `storage_errors` into `StorageUnavailable`. Backends that retry on their
    own (see `_wrap_tenacity`) apply the timeout per attempt instead and set
    `retries_internally`.
    """

    storage_errors: tuple[type[BaseException], ...] = (
        OSError,
        asyncio.TimeoutError,
        tenacity.RetryError,
    )
    retries_internally = False
    store_name = "storage"

    def __init__(self, timeout: float = 5):
        self.timeout = timeout

    async def on_startup(self, log: structlog.stdlib.BoundLogger):
        pass

    async def close(self):
        pass

    async def _call(
        self,
        log: structlog.stdlib.BoundLogger,
        operation: str,
        coro: Awaitable[T],
    ) -> T:
        timer = Timer()
        timer.start()
        try:
            if self.retries_internally:
                result = await coro
            else:
                result = await asyncio.wait_for(coro, timeout=self.timeout)
        except StorageUnavailable:
            raise
        except self.storage_errors as e:
            raise StorageUnavailable(
                f"{self.store_name} failed during {operation}: {e!r}"
            ) from e
        finally:
            timer.end()
        log.debug(
            "Storage call",
            store=self.store_name,
            operation=operation,
            duration=timer.wall_time,
        )
        return result

    def _wrap_tenacity(
        self,
        log: structlog.stdlib.BoundLogger,
        exception: type[BaseException] | tuple[type[BaseException], ...],
        func: Callable,
    ):
        async def _timeout(*args, **kwargs):
            return await asyncio.wait_for(func(*args, **kwargs), timeout=self.timeout)

        if isinstance(exception, tuple):
            exc_tuple = exception
        else:
            exc_tuple = (exception,)

        exc_tuple += (asyncio.TimeoutError,)

        return tenacity.retry(
            retry=tenacity.retry_if_exception_type(exc_tuple),
            wait=tenacity.wait_exponential(multiplier=1, min=1, max=5),
            stop=tenacity.stop_after_attempt(3),
            before_sleep=tenacity.before_sleep_log(
                log.bind(func=func),  # type: ignore
                logging.WARNING,
                exc_info=True,
            ),
        )(_timeout)
