"""
General utility functions.

Responsibilities:
- Run blocking client calls (Supabase, requests) off the event loop
- Timestamp helpers shared by the pipeline and the sweeper
"""

import asyncio
import functools
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar

T = TypeVar("T")


async def run_blocking(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a synchronous call in the default executor and await its result."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
