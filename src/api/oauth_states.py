"""
In-memory CSRF state store for the calendar connect flow.

Each state is issued to one user, expires after ``ttl_s`` and can be consumed
once. The store is process-local: run a single worker process, or callbacks
served by another process are rejected with ``invalid_state``.
"""

import secrets
import time
from collections import OrderedDict
from typing import Callable, Optional, Tuple

STATE_TTL_SECONDS = 600  # 10 minutes
MAX_PENDING_STATES = 1024


class PendingOAuthStates:
    def __init__(
        self,
        ttl_s: float = STATE_TTL_SECONDS,
        max_entries: int = MAX_PENDING_STATES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_s = ttl_s
        self.max_entries = max_entries
        self._clock = clock
        # state -> (user id, expiry); insertion order is issue order
        self._entries: "OrderedDict[str, Tuple[str, float]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, oauth_state: str) -> bool:
        return oauth_state in self._entries

    def issue(self, user_id: str) -> str:
        """Generate a state token for ``user_id`` and remember it."""
        self.evict_expired()
        oauth_state = secrets.token_urlsafe(24)
        self._entries[oauth_state] = (user_id, self._clock() + self.ttl_s)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        return oauth_state

    def consume(self, oauth_state: str) -> Optional[str]:
        """One-time lookup: the user the state was issued to, or None if unknown or expired."""
        self.evict_expired()
        entry = self._entries.pop(oauth_state, None)
        if entry is None:
            return None
        user_id, expiry = entry
        if self._clock() >= expiry:
            return None
        return user_id

    def evict_expired(self) -> None:
        now = self._clock()
        expired = [k for k, (_, expiry) in self._entries.items() if now >= expiry]
        for k in expired:
            del self._entries[k]

    def clear(self) -> None:
        self._entries.clear()
