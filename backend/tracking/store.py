# Blocking pymongo calls, run off the event loop with a bounded timeout

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional

import pymongo
from pymongo.errors import DuplicateKeyError, PyMongoError

from .errors import StorageTimeout, StorageUnavailable

logger = logging.getLogger(__name__)

executor = ThreadPoolExecutor(max_workers=10)


def guarded(fn: Callable[..., Any], *args, timeout: Optional[float] = None, **kwargs) -> Any:
    """Call *fn* under a client-side operation timeout, mapping driver errors.

    DuplicateKeyError is passed through untouched; callers that upsert decide
    what a duplicate means for them.
    """
    try:
        if timeout is None:
            return fn(*args, **kwargs)
        with pymongo.timeout(timeout):
            return fn(*args, **kwargs)
    except DuplicateKeyError:
        raise
    except PyMongoError as e:
        if getattr(e, "timeout", False):
            logger.warning("Store operation timed out after %ss: %s", timeout, e)
            raise StorageTimeout(str(e)) from e
        logger.error("Store operation failed: %s", e)
        raise StorageUnavailable(str(e)) from e


async def run_blocking(fn: Callable[..., Any], *args, timeout: Optional[float] = None, **kwargs) -> Any:
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(executor, lambda: guarded(fn, *args, timeout=timeout, **kwargs))
