"""
Async wrappers for Docker SDK to prevent event loop blocking.

The Docker SDK (docker-py) is synchronous. These wrappers use asyncio.to_thread()
to run blocking calls in the default thread pool so the orchestrator can keep
several upgrade pipelines and readiness polls in flight.

Usage:
    from utils.async_docker import async_docker_call

    attrs = await async_docker_call(client.api.inspect_container, container_id)
"""

import asyncio
from typing import Callable, TypeVar

T = TypeVar('T')


async def async_docker_call(sync_fn: Callable[..., T], *args, **kwargs) -> T:
    """
    Execute a synchronous Docker SDK call in a thread pool.

    Args:
        sync_fn: Synchronous function to call (e.g., client.api.stop)
        *args: Positional arguments to pass to sync_fn
        **kwargs: Keyword arguments to pass to sync_fn

    Returns:
        Result from the synchronous function

    Example:
        await async_docker_call(client.api.stop, container_id, timeout=10)
    """
    return await asyncio.to_thread(sync_fn, *args, **kwargs)
