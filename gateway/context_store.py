"""
Per-user conversation context cache.

Each user owns one rolling transcript of turns. Entries expire a fixed
TTL after their last write and are kept within a character budget by
dropping the oldest turns first. Reads never refresh the TTL.
"""

import asyncio
import logging
import threading
import time
import weakref
from dataclasses import dataclass
from typing import Callable, Iterable, Literal, Sequence

from gateway.errors import CacheFailure

logger = logging.getLogger(__name__)

Speaker = Literal["user", "assistant"]

_LABELS = {"user": "User", "assistant": "AI"}


@dataclass(frozen=True)
class Turn:
    speaker: Speaker
    text: str

    def render(self) -> str:
        return f"{_LABELS[self.speaker]}: {self.text}"


def serialize_transcript(turns: Sequence[Turn]) -> str:
    """Render turns oldest first, one per line."""
    return "\n".join(turn.render() for turn in turns)


def truncate_transcript(turns: Sequence[Turn], budget: int) -> list[Turn]:
    """
    Drop oldest turns until the serialized transcript fits the budget.

    The newest turn is never dropped or cut, so a newest turn longer than
    the budget is returned alone.
    """
    kept = list(turns)
    # serialized length = sum of rendered turns + one separator between each
    size = sum(len(turn.render()) for turn in kept) + max(len(kept) - 1, 0)
    while len(kept) > 1 and size > budget:
        dropped = kept.pop(0)
        size -= len(dropped.render()) + 1
    return kept


@dataclass
class _Entry:
    turns: list[Turn]
    expires_at: float


class ContextStore:
    """
    In-process keyed transcript cache with TTL and size-bounded truncation.

    Args:
        ttl_seconds: Lifetime of an entry after its last write
        max_chars: Character budget of a serialized transcript
        clock: Monotonic time source, injectable for tests
    """

    def __init__(
        self,
        ttl_seconds: float = 1800,
        max_chars: int = 3000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_chars = max_chars
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._mutex = threading.Lock()

    def get(self, user_id: str) -> list[Turn]:
        """Return a copy of the live transcript, empty if absent or expired."""
        try:
            with self._mutex:
                entry = self._entries.get(user_id)
                if entry is None:
                    return []
                if entry.expires_at <= self._clock():
                    del self._entries[user_id]
                    logger.debug(f"Context expired for user {user_id}")
                    return []
                return list(entry.turns)
        except Exception as e:
            raise CacheFailure(f"context read failed: {e}") from e

    def append(self, user_id: str, turn: Turn) -> None:
        self.extend(user_id, [turn])

    def extend(self, user_id: str, turns: Iterable[Turn]) -> None:
        """
        Append turns in order, enforce the budget and refresh the TTL.
        """
        try:
            with self._mutex:
                current = self._live_turns(user_id)
                updated = truncate_transcript(current + list(turns), self.max_chars)
                self._entries[user_id] = _Entry(
                    turns=updated,
                    expires_at=self._clock() + self.ttl_seconds,
                )
        except Exception as e:
            raise CacheFailure(f"context write failed: {e}") from e
        logger.debug(f"Context for user {user_id} now holds {len(updated)} turns")

    def touch(self, user_id: str) -> bool:
        """Reset the TTL of a live entry. Returns False if there is none."""
        with self._mutex:
            if not self._live_turns(user_id):
                return False
            self._entries[user_id].expires_at = self._clock() + self.ttl_seconds
            return True

    def purge_expired(self) -> int:
        """Remove all expired entries and return how many were removed."""
        with self._mutex:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info(f"Purged {len(expired)} expired contexts")
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def _live_turns(self, user_id: str) -> list[Turn]:
        entry = self._entries.get(user_id)
        if entry is None or entry.expires_at <= self._clock():
            self._entries.pop(user_id, None)
            return []
        return list(entry.turns)


class KeyedLock:
    """
    Registry of per-key asyncio locks.

    Locks are held weakly, so a key's lock disappears once no coroutine is
    waiting on or holding it.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def __call__(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


async def purge_periodically(store: ContextStore, interval: float) -> None:
    """
    Sweep expired entries every `interval` seconds until cancelled.

    Reads and writes only expire the entry they touch; this loop removes
    entries of users who never come back.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            store.purge_expired()
        except Exception:
            logger.exception("Context purge failed")
