"""Bounded calls into the storage collaborator.

Reads go through ``call_store``. Writes go through ``write_store``: the
store may run the write on a worker thread that keeps going after the
caller stops waiting, so a timed-out write is awaited to completion and,
if it committed anyway, undone before the caller sees StorageUnavailable.
Callers hold the room lock across the whole call, so no other writer
observes the late row.
"""
import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from app.storage.base import StoreError

from .errors import StorageUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_store(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """Await a store read, mapping failure or timeout to StorageUnavailable."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"[Storage] {operation} timed out after {timeout}s")
        raise StorageUnavailable(f"{operation} timed out")
    except StoreError as e:
        logger.warning(f"[Storage] {operation} failed: {e}")
        raise StorageUnavailable(f"{operation} failed")


async def write_store(
    write: Awaitable[None],
    timeout: float,
    operation: str,
    undo: Callable[[], Awaitable[None]],
) -> None:
    """Run a store write, bounded by ``timeout``.

    On timeout the write is left running and awaited; if it then commits,
    ``undo`` is awaited to revert it. If the undo fails as well the write is
    kept and this returns normally, so the caller applies it in memory
    rather than diverging from the store.

    Raises:
        StorageUnavailable: If the write failed, or timed out and was
            reverted. Nothing the write did is left in the store.
    """
    task = asyncio.ensure_future(write)
    try:
        await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return
    except StoreError as e:
        logger.warning(f"[Storage] {operation} failed: {e}")
        raise StorageUnavailable(f"{operation} failed")
    except asyncio.TimeoutError:
        logger.warning(
            f"[Storage] {operation} timed out after {timeout}s; waiting for it to settle"
        )

    try:
        await task
    except StoreError as e:
        logger.info(f"[Storage] Late {operation} failed: {e}")
        raise StorageUnavailable(f"{operation} timed out")

    try:
        await undo()
    except StoreError as e:
        logger.error(f"[Storage] Could not revert late {operation}, keeping it: {e}")
        return
    logger.info(f"[Storage] Reverted late {operation}")
    raise StorageUnavailable(f"{operation} timed out")
