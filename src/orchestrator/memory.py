"""Conversation memory for the orchestrators.

Holds the completed turns of each session and renders them into the
history placeholder of a prompt.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Optional

from shared.logging import get_logger
from shared.models import ConversationTurn

logger = get_logger(__name__)


class ConversationMemory:
    """
    Ordered (input, output) turns of one session.

    A turn is appended only after a chain call has fully succeeded, so a
    failed call never leaves a partial exchange behind.
    """

    def __init__(self, session_id: str, max_turns: Optional[int] = None) -> None:
        """
        Initialize an empty memory.

        Args:
            session_id: Session this memory belongs to
            max_turns: Keep at most this many recent turns (unbounded if None)
        """
        self.session_id = session_id
        self.max_turns = max_turns
        self.updated_at = datetime.utcnow()

        self._turns: list[ConversationTurn] = []
        self._lock = asyncio.Lock()

    @property
    def turns(self) -> tuple[ConversationTurn, ...]:
        """Snapshot of the stored turns, oldest first."""
        return tuple(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    def render(self, human_prefix: str = "Human", ai_prefix: str = "AI") -> str:
        """Render the history as prefixed lines; empty string if no turns."""
        lines = []
        for turn in self._turns:
            lines.append(f"{human_prefix}: {turn.input}")
            lines.append(f"{ai_prefix}: {turn.output}")
        return "\n".join(lines)

    async def save_turn(self, input: str, output: str) -> ConversationTurn:
        """Append one completed turn."""
        turn = ConversationTurn(input=input, output=output)

        async with self._lock:
            self._turns.append(turn)
            if self.max_turns is not None and len(self._turns) > self.max_turns:
                self._turns = self._turns[-self.max_turns:]
            self.updated_at = datetime.utcnow()

        return turn

    async def clear(self) -> None:
        """Forget all turns."""
        async with self._lock:
            self._turns = []
            self.updated_at = datetime.utcnow()


class MemoryManager:
    """
    Session-keyed memory store.

    Responsibilities:
    - Create and retrieve memories per session
    - Expire idle sessions
    - Hand out a per-session lock so callers run one request per session
    """

    def __init__(
        self,
        max_turns: Optional[int] = 50,
        session_ttl_minutes: int = 60
    ) -> None:
        """
        Initialize memory manager.

        Args:
            max_turns: Maximum turns kept per session
            session_ttl_minutes: Idle time after which a session expires
        """
        self.max_turns = max_turns
        self.ttl = timedelta(minutes=session_ttl_minutes)

        self._memories: dict[str, ConversationMemory] = {}
        self._session_locks: dict[str, asyncio.Lock] = {}
        self._lock = asyncio.Lock()

    def _is_expired(self, memory: ConversationMemory) -> bool:
        return datetime.utcnow() - memory.updated_at > self.ttl

    async def get(self, session_id: str) -> Optional[ConversationMemory]:
        """
        Get the memory of a session.

        Returns:
            Memory if found and not expired, None otherwise
        """
        memory = self._memories.get(session_id)

        if memory is None:
            return None

        if self._is_expired(memory):
            async with self._lock:
                if self._memories.get(session_id) is memory:
                    del self._memories[session_id]
            logger.info("Session memory expired", session_id=session_id)
            return None

        return memory

    async def get_or_create(self, session_id: str) -> ConversationMemory:
        """Get the memory of a session, creating an empty one if needed."""
        memory = await self.get(session_id)
        if memory:
            return memory

        async with self._lock:
            memory = self._memories.get(session_id)
            if memory is None or self._is_expired(memory):
                memory = ConversationMemory(session_id, max_turns=self.max_turns)
                self._memories[session_id] = memory
                logger.info("Session memory created", session_id=session_id)

        return memory

    def _release_session_lock(self, session_id: str) -> None:
        # A held lock stays registered so waiting and later requests share it
        lock = self._session_locks.get(session_id)
        if lock is not None and not lock.locked():
            del self._session_locks[session_id]

    @asynccontextmanager
    async def session_lock(self, session_id: str) -> AsyncIterator[None]:
        """Serialize requests that touch the same session."""
        async with self._lock:
            lock = self._session_locks.setdefault(session_id, asyncio.Lock())

        async with lock:
            yield

    async def delete(self, session_id: str) -> bool:
        """
        Delete the memory of a session.

        Returns:
            True if deleted, False if not found
        """
        async with self._lock:
            self._release_session_lock(session_id)
            if session_id in self._memories:
                del self._memories[session_id]
                logger.info("Session memory deleted", session_id=session_id)
                return True
        return False

    async def cleanup_expired(self) -> int:
        """
        Remove expired sessions.

        Returns:
            Number of sessions removed
        """
        async with self._lock:
            expired = [
                session_id for session_id, memory in self._memories.items()
                if self._is_expired(memory)
            ]

            for session_id in expired:
                del self._memories[session_id]
                self._release_session_lock(session_id)

        if expired:
            logger.info("Expired sessions cleaned up", count=len(expired))

        return len(expired)

    def get_stats(self) -> dict[str, Any]:
        """Get memory manager statistics."""
        return {
            "total_sessions": len(self._memories),
            "max_turns": self.max_turns,
            "ttl_minutes": self.ttl.total_seconds() / 60
        }
