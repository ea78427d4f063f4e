"""
Per-container upgrade locks.

Keeps two upgrade requests for the same container from racing. Keys are
composite "gateway:endpoint:short_id" strings from utils.keys, so the same
container ID on two endpoints never collides.

Locks held longer than the stale threshold (holder crashed or hung) are
released on the next acquire/is_locked check.
"""

import logging
import threading
import time
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from config.settings import AppConfig
from updates.errors import UpgradeInProgressError

logger = logging.getLogger(__name__)


@dataclass
class LockInfo:
    """Who holds a lock and since when (monotonic seconds)."""
    owner: str
    acquired_at: float


class UpgradeLockManager:
    """In-memory upgrade lock registry"""

    def __init__(self, stale_after: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.stale_after = stale_after if stale_after is not None else AppConfig.UPGRADE_LOCK_TIMEOUT_SECONDS
        self._clock = clock
        self._locks: Dict[str, LockInfo] = {}
        self._lock = threading.Lock()  # Atomic check-and-set across threads

    def _drop_if_stale(self, key: str) -> None:
        existing = self._locks.get(key)
        if existing is None:
            return
        age = self._clock() - existing.acquired_at
        if age > self.stale_after:
            logger.warning(f"Releasing stale upgrade lock {key} (owner={existing.owner}, age={age:.0f}s)")
            del self._locks[key]

    def _take(self, key: str, owner: str) -> Optional[LockInfo]:
        with self._lock:
            self._drop_if_stale(key)
            if key in self._locks:
                return None
            info = LockInfo(owner=owner, acquired_at=self._clock())
            self._locks[key] = info
            return info

    def acquire(self, key: str, owner: str = "unknown") -> bool:
        """
        Try to take the lock for `key`.

        Returns:
            True if acquired, False if another holder has it
        """
        return self._take(key, owner) is not None

    def release(self, key: str, info: Optional[LockInfo] = None) -> None:
        """
        Release the lock for `key`.

        With `info`, the lock is only released while it is still that
        acquisition; a holder whose stale lock was taken over leaves the new
        holder's lock alone.
        """
        with self._lock:
            current = self._locks.get(key)
            if current is None:
                return
            if info is not None and current is not info:
                logger.warning(f"Not releasing upgrade lock {key}: now held by {current.owner}")
                return
            del self._locks[key]

    def is_locked(self, key: str) -> bool:
        with self._lock:
            self._drop_if_stale(key)
            return key in self._locks

    def holder(self, key: str) -> Optional[LockInfo]:
        with self._lock:
            self._drop_if_stale(key)
            return self._locks.get(key)

    def __len__(self) -> int:
        return len(self._locks)

    def clear(self) -> None:
        with self._lock:
            self._locks.clear()

    @asynccontextmanager
    async def locked(self, key: str, owner: str = "unknown", container_name: Optional[str] = None):
        """
        Hold the lock for the duration of the block.

        Raises:
            UpgradeInProgressError: if the lock is already held
        """
        info = self._take(key, owner)
        if info is None:
            holder = self.holder(key)
            raise UpgradeInProgressError(
                f"Container {container_name or key} is already being upgraded"
                + (f" (by {holder.owner})" if holder else ""),
                container_name=container_name,
            )
        try:
            yield
        finally:
            self.release(key, info)

    async def lock_all(self, stack: AsyncExitStack, keys: Dict[str, str], owner: str = "unknown") -> None:
        """
        Take the locks for several containers, in sorted key order.

        Each lock is registered on `stack` and released when it closes. If
        any key is held, the locks taken so far stay on the stack and
        UpgradeInProgressError is raised.

        Args:
            stack: Exit stack owning the locks
            keys: composite key -> container name
        """
        for key in sorted(keys):
            await stack.enter_async_context(self.locked(key, owner=owner, container_name=keys[key]))


# Global default instance
_upgrade_lock_manager = None


def get_upgrade_lock_manager() -> UpgradeLockManager:
    """Get or create the process-wide UpgradeLockManager"""
    global _upgrade_lock_manager
    if _upgrade_lock_manager is None:
        _upgrade_lock_manager = UpgradeLockManager()
    return _upgrade_lock_manager
