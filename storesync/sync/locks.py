from __future__ import annotations
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class LockResult(Generic[T]):
    skipped: bool = False
    result: Optional[T] = None
    error: Optional[Exception] = None

    @property
    def success(self) -> bool:
        return not self.skipped and self.error is None


def store_lock_key(store_code: str) -> str:
    return f"store:{store_code}"


class StoreLockManager:
    """
    Per-key mutual exclusion that skips instead of waiting.

    The owner table is a plain dict: under a single asyncio loop the
    check-and-set in try_acquire runs without interleaving. A multi-process
    deployment replaces this object with one backed by an atomic SETNX-style
    primitive exposing the same three methods.
    """

    def __init__(self) -> None:
        self._owners: Dict[str, str] = {}

    def try_acquire(self, key: str) -> Optional[str]:
        if key in self._owners:
            return None
        token = secrets.token_hex(8)
        self._owners[key] = token
        return token

    def release(self, key: str, token: str) -> None:
        if self._owners.get(key) == token:
            del self._owners[key]
        else:
            logger.warning("lock release by non-owner ignored", extra={"lock_key": key})

    def is_locked(self, key: str) -> bool:
        return key in self._owners

    def held_keys(self) -> List[str]:
        return sorted(self._owners)

    async def with_lock(self, key: str, fn: Callable[[], Awaitable[T]]) -> LockResult[T]:
        token = self.try_acquire(key)
        if token is None:
            logger.debug("lock not acquired - already held", extra={"lock_key": key})
            return LockResult(skipped=True)

        logger.debug("lock acquired", extra={"lock_key": key})
        try:
            return LockResult(result=await fn())
        except Exception as e:
            return LockResult(error=e)
        finally:
            # also runs on cancellation, which then propagates
            self.release(key, token)
