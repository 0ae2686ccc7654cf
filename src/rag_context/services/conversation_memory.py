"""Per-conversation memory of recent turns.

Sessions are keyed by conversation id, hold a bounded window of messages and
are forgotten after a period of inactivity. Relevant turns are rendered into
the system prompt so follow-up questions keep their context.
"""

import asyncio
import contextlib
import logging
import time
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

from rag_context.models.context import (
    ConversationMessage,
    ConversationSession,
    ConversationStats,
)
from rag_context.services.query_intelligence import extract_topics

if TYPE_CHECKING:
    from rag_context.config.settings import Settings

logger = logging.getLogger(__name__)

DOMINANT_TOPIC_COUNT = 5
COMMON_TOPIC_COUNT = 10
RECENT_TURNS = 3
PREVIEW_LENGTH = 150


@dataclass
class ConversationConfig:
    """Conversation memory configuration (times in seconds)."""

    max_messages: int = 20
    session_ttl: float = 3600.0
    cleanup_interval: float = 600.0
    history_messages: int = 5
    relevance_threshold: float = 0.3

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ConversationConfig":
        """Build conversation configuration from application settings."""
        return cls(
            max_messages=settings.conversation_max_messages,
            session_ttl=settings.conversation_ttl_seconds,
            cleanup_interval=settings.conversation_cleanup_interval_seconds,
        )


def time_ago(seconds: float) -> str:
    """Render an age in seconds as a short relative label."""
    seconds = int(max(seconds, 0))
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    return f"{seconds // 86400}d ago"


class ConversationMemory:
    """Bounded, expiring store of conversation turns."""

    def __init__(
        self,
        config: ConversationConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize conversation memory.

        Args:
            config: Memory configuration (defaults if omitted)
            clock: Monotonic clock in seconds
        """
        self.config = config or ConversationConfig()
        self.clock = clock
        self._sessions: dict[str, ConversationSession] = {}
        self.expired_count = 0
        self._cleanup_task: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def _is_expired(self, session: ConversationSession, now: float) -> bool:
        return now - session.last_active > self.config.session_ttl

    def _session(self, session_id: str) -> ConversationSession | None:
        session = self._sessions.get(session_id)
        if session is not None and self._is_expired(session, self.clock()):
            self._sessions.pop(session_id)
            self.expired_count += 1
            logger.debug("Conversation %s expired", session_id)
            return None
        return session

    def add_message(
        self,
        session_id: str,
        role: Literal["user", "assistant"],
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record one turn, starting the session if needed.

        Args:
            session_id: Conversation identifier
            role: Who spoke
            content: Message text
            metadata: Optional turn metadata (intent, timings)
        """
        now = self.clock()
        session = self._session(session_id)
        if session is None:
            session = ConversationSession(session_id=session_id, last_active=now)
            self._sessions[session_id] = session

        session.messages.append(
            ConversationMessage(
                role=role,
                content=content,
                timestamp=now,
                topics=extract_topics(content),
                metadata=dict(metadata or {}),
            )
        )
        session.last_active = now
        session.total_messages += 1

        if len(session.messages) > self.config.max_messages:
            del session.messages[: -self.config.max_messages]
        session.dominant_topics = self._dominant_topics(session)

    @staticmethod
    def _dominant_topics(session: ConversationSession) -> list[str]:
        counts = Counter(topic for message in session.messages for topic in message.topics)
        return [topic for topic, _ in counts.most_common(DOMINANT_TOPIC_COUNT)]

    def get_relevant_history(
        self, session_id: str, query: str, max_messages: int | None = None
    ) -> list[ConversationMessage]:
        """Turns relevant to a query, oldest first.

        The last three turns always count as relevant; older turns need a
        topic overlap with the query of at least the relevance threshold.
        """
        session = self._session(session_id)
        if session is None:
            return []

        limit = max_messages if max_messages is not None else self.config.history_messages
        if limit <= 0:
            return []
        query_topics = set(extract_topics(query))
        recent_from = len(session.messages) - RECENT_TURNS

        relevant: list[ConversationMessage] = []
        for index, message in enumerate(session.messages):
            if index >= recent_from:
                relevant.append(message)
                continue
            overlap = len(query_topics.intersection(message.topics))
            denominator = max(len(message.topics), len(query_topics), 1)
            if overlap / denominator >= self.config.relevance_threshold:
                relevant.append(message)
        return relevant[-limit:]

    def get_conversational_context(self, session_id: str, query: str) -> str:
        """Render relevant history as one line per turn (empty when none)."""
        now = self.clock()
        lines = []
        for message in self.get_relevant_history(session_id, query):
            preview = message.content[:PREVIEW_LENGTH]
            if len(message.content) > PREVIEW_LENGTH:
                preview += "..."
            age = time_ago(now - message.timestamp)
            lines.append(f"- {message.role.upper()} ({age}): {preview}")
        return "\n".join(lines)

    def get_session_summary(self, session_id: str) -> dict[str, Any] | None:
        """Message count, dominant topics and duration of a session."""
        session = self._session(session_id)
        if session is None:
            return None
        first = session.messages[0].timestamp if session.messages else session.last_active
        return {
            "message_count": session.total_messages,
            "dominant_topics": list(session.dominant_topics),
            "duration_seconds": session.last_active - first,
        }

    def clear_session(self, session_id: str) -> bool:
        """Forget a session, returning whether it existed."""
        return self._sessions.pop(session_id, None) is not None

    def cleanup_expired(self) -> int:
        """Sweep expired sessions, returning how many were removed."""
        now = self.clock()
        expired = [sid for sid, s in self._sessions.items() if self._is_expired(s, now)]
        for session_id in expired:
            del self._sessions[session_id]
        if expired:
            self.expired_count += len(expired)
            logger.info("Cleaned up %d expired conversations", len(expired))
        return len(expired)

    def get_stats(self) -> ConversationStats:
        """Session counts and the most common topics across sessions."""
        now = self.clock()
        sessions = list(self._sessions.values())
        active = [s for s in sessions if not self._is_expired(s, now)]
        total_messages = sum(s.total_messages for s in sessions)
        topics = Counter(topic for s in sessions for topic in s.dominant_topics)
        return ConversationStats(
            total_sessions=len(sessions),
            active_sessions=len(active),
            avg_messages_per_session=total_messages / len(sessions) if sessions else 0.0,
            common_topics=[topic for topic, _ in topics.most_common(COMMON_TOPIC_COUNT)],
            expired_count=self.expired_count,
        )

    # -- lifecycle ---------------------------------------------------------

    def start_cleanup_task(self) -> None:
        """Start the periodic session sweep on the running event loop."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; conversation cleanup task not started")
            return
        self._cleanup_task = loop.create_task(self._cleanup_loop())
        logger.info(
            "Conversation cleanup task started (interval=%.0fs)",
            self.config.cleanup_interval,
        )

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval)
            try:
                self.cleanup_expired()
            except Exception:
                logger.exception("Conversation cleanup sweep failed")

    async def close(self) -> None:
        """Stop the cleanup task and forget every session."""
        task = self._cleanup_task
        self._cleanup_task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            logger.info("Conversation cleanup task stopped")
        self._sessions.clear()
