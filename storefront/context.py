import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

from fastapi import Depends, Request

from .auth import Identity, optional_identity, require_admin, require_identity
from .messaging.producer import ChangeFeedProducer


class QueryCache:
    """
    Cached query results keyed by ``(entity, user_id, ...)``.

    Writes made by this process and change feed events both invalidate
    entries; readers reload on the next access. Safe to use from the change
    feed consumer thread.

    Loads run outside the lock. A load that overlaps an invalidation returns
    its result but does not store it, so the next reader loads again.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[Hashable, ...], Any] = {}
        self._generation = 0

    def get_or_load(self, key: Tuple[Hashable, ...], loader: Callable[[], Any]) -> Any:
        with self._lock:
            if key in self._entries:
                return self._entries[key]
            generation = self._generation
        value = loader()
        with self._lock:
            if generation == self._generation:
                self._entries[key] = value
        return value

    def _drop(self, stale) -> int:
        self._generation += 1
        for k in stale:
            del self._entries[k]
        return len(stale)

    def invalidate(self, entity: str, user_id: Optional[str] = None) -> int:
        """Drops entries for an entity, optionally only those of one user."""
        with self._lock:
            return self._drop([
                k for k in self._entries
                if k[0] == entity and (user_id is None or (len(k) > 1 and k[1] == user_id))
            ])

    def invalidate_user(self, user_id: str) -> int:
        with self._lock:
            return self._drop([k for k in self._entries if len(k) > 1 and k[1] == user_id])

    def __contains__(self, key):
        with self._lock:
            return key in self._entries


@dataclass(frozen=True)
class AppContext:
    """Everything an operation needs to know about the caller."""

    identity: Optional[Identity]
    cache: QueryCache
    feed: Optional[ChangeFeedProducer] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.identity.user_id if self.identity else None

    def record_change(self, table: str, event: str, row_id: str, user_id: Optional[str] = None) -> None:
        """Invalidates cached reads of the row owner and announces the change."""
        owner = user_id or self.user_id
        self.cache.invalidate(table, owner)
        if self.feed is not None:
            self.feed.publish(table, event, {"id": row_id, "user_id": owner})


def get_cache(request: Request) -> QueryCache:
    return request.app.state.cache


def get_change_feed(request: Request) -> Optional[ChangeFeedProducer]:
    return request.app.state.change_feed


def user_context(
    identity: Identity = Depends(require_identity),
    cache: QueryCache = Depends(get_cache),
    feed: Optional[ChangeFeedProducer] = Depends(get_change_feed),
) -> AppContext:
    return AppContext(identity=identity, cache=cache, feed=feed)


def guest_context(
    identity: Optional[Identity] = Depends(optional_identity),
    cache: QueryCache = Depends(get_cache),
    feed: Optional[ChangeFeedProducer] = Depends(get_change_feed),
) -> AppContext:
    return AppContext(identity=identity, cache=cache, feed=feed)


def admin_context(
    identity: Identity = Depends(require_admin),
    cache: QueryCache = Depends(get_cache),
    feed: Optional[ChangeFeedProducer] = Depends(get_change_feed),
) -> AppContext:
    return AppContext(identity=identity, cache=cache, feed=feed)
