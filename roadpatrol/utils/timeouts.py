import asyncio
from typing import Awaitable, TypeVar

from ..core.exceptions import RequestTimeoutError

T = TypeVar("T")


async def with_timeout(awaitable: Awaitable[T], seconds: float) -> T:
    """Await with a deadline; expiry raises RequestTimeoutError('Request timeout')."""
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError:
        raise RequestTimeoutError()
