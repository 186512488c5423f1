"""
Session Management
Maps a conversation id to its ConversationContext and per-session lock.

Sessions are kept in memory for the lifetime of the process. Nothing is
persisted; a restart starts every conversation from scratch.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from .conversation import ConversationContext, Phase, utcnow

logger = logging.getLogger("agent.session_manager")


@dataclass
class SessionEntry:
    """
    One registry slot. ``lock`` admits one turn at a time; ``closed`` is set
    when the conversation is deleted so in-flight and queued turns can tell.
    """

    conversation_id: str
    context: ConversationContext
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    closed: bool = False
    last_activity: datetime = field(default_factory=utcnow)
    # phase of the turn currently holding the lock, if any
    active_phase: Optional[Phase] = None

    @property
    def busy(self) -> bool:
        return self.lock.locked()

    def close(self) -> None:
        self.closed = True


class SessionRegistry:
    """
    Manages conversation sessions.

    Notes:
    - Creation is idempotent per id: concurrent first requests for the
      same id get the same entry.
    - Idle sessions older than ``session_timeout_minutes`` are dropped
      lazily on the next lookup. 0 disables expiry.
    """

    def __init__(self, session_timeout_minutes: int = 30, clock: Optional[Callable[[], datetime]] = None):
        self._entries: Dict[str, SessionEntry] = {}
        self._lock = asyncio.Lock()
        self._clock = clock or utcnow
        self.session_timeout = timedelta(minutes=session_timeout_minutes) if session_timeout_minutes > 0 else None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._entries

    def _expired(self, entry: SessionEntry) -> bool:
        if self.session_timeout is None or entry.busy:
            return False
        return self._clock() - entry.last_activity > self.session_timeout

    def _lookup(self, conversation_id: str) -> Optional[SessionEntry]:
        entry = self._entries.get(conversation_id)
        if entry is not None and self._expired(entry):
            logger.info("Session %s expired after inactivity; dropping", conversation_id)
            entry.close()
            del self._entries[conversation_id]
            return None
        return entry

    async def get_or_create(self, conversation_id: str, user_id: str) -> SessionEntry:
        """
        Return the entry for ``conversation_id``, creating it on first use.
        """
        async with self._lock:
            entry = self._lookup(conversation_id)
            if entry is None:
                now = self._clock()
                context = ConversationContext(id=conversation_id, user_id=user_id, created_at=now, updated_at=now)
                entry = SessionEntry(conversation_id=conversation_id, context=context, last_activity=now)
                self._entries[conversation_id] = entry
                logger.info("Created session %s for user %s", conversation_id, user_id)
            else:
                entry.last_activity = self._clock()
            return entry

    def get(self, conversation_id: str) -> Optional[SessionEntry]:
        return self._lookup(conversation_id)

    async def delete(self, conversation_id: str) -> bool:
        """
        Remove the mapping and close the entry. Returns False when there was
        nothing to delete; deleting twice is harmless.
        """
        async with self._lock:
            entry = self._entries.pop(conversation_id, None)
        if entry is None:
            return False
        entry.close()
        logger.info("Deleted session %s", conversation_id)
        return True

    async def teardown(self) -> None:
        async with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for entry in entries:
            entry.close()
        logger.info("Session registry torn down (%d session(s) closed)", len(entries))
