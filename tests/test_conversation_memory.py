"""Tests for per-conversation memory."""

import pytest

from conftest import FakeClock
from rag_context.config.settings import Settings
from rag_context.services.conversation_memory import (
    ConversationConfig,
    ConversationMemory,
    time_ago,
)


@pytest.fixture
def memory(fake_clock: FakeClock) -> ConversationMemory:
    """Memory with a one-minute session TTL on the fake clock."""
    return ConversationMemory(
        ConversationConfig(max_messages=20, session_ttl=60.0), clock=fake_clock
    )


class TestRecording:
    """Test adding turns to sessions."""

    def test_add_message_starts_session(self, memory: ConversationMemory):
        """Test the first turn creates the session."""
        memory.add_message("s1", "user", "Tell me about the React dashboard")

        assert "s1" in memory
        assert len(memory) == 1
        assert memory.get_session_summary("s1")["message_count"] == 1

    def test_window_is_bounded(self, fake_clock: FakeClock):
        """Test only the newest turns are kept while the total keeps counting."""
        memory = ConversationMemory(ConversationConfig(max_messages=3), clock=fake_clock)

        for i in range(5):
            memory.add_message("s1", "user", f"m{i}")

        history = memory.get_relevant_history("s1", "anything", max_messages=10)
        assert [m.content for m in history] == ["m2", "m3", "m4"]
        assert memory.get_session_summary("s1")["message_count"] == 5

    def test_dominant_topics(self, memory: ConversationMemory):
        """Test topics are ranked by frequency across turns."""
        memory.add_message("s1", "user", "React dashboard")
        memory.add_message("s1", "assistant", "React team")

        summary = memory.get_session_summary("s1")
        assert summary["dominant_topics"] == ["technology", "leadership"]

    def test_turn_metadata_is_kept(self, memory: ConversationMemory):
        """Test metadata travels with the turn."""
        memory.add_message("s1", "user", "hello", {"query_intent": "CASUAL"})

        [message] = memory.get_relevant_history("s1", "hello")
        assert message.role == "user"
        assert message.metadata == {"query_intent": "CASUAL"}


class TestRelevantHistory:
    """Test history selection and rendering."""

    @pytest.fixture
    def session(self, memory: ConversationMemory) -> ConversationMemory:
        for content in (
            "Led the design team",
            "Weather is nice",
            "Hello there",
            "Good morning",
            "Thanks",
            "Bye",
        ):
            memory.add_message("s1", "user", content)
        return memory

    def test_recent_turns_and_topic_overlap(self, session: ConversationMemory):
        """Test the last three turns plus older turns sharing a topic are relevant."""
        history = session.get_relevant_history("s1", "Tell me about the team leadership")

        assert [m.content for m in history] == [
            "Led the design team",
            "Good morning",
            "Thanks",
            "Bye",
        ]

    def test_limit_keeps_the_newest(self, session: ConversationMemory):
        """Test the limit drops the oldest relevant turns."""
        history = session.get_relevant_history("s1", "team", max_messages=2)

        assert [m.content for m in history] == ["Thanks", "Bye"]

    def test_unknown_session(self, memory: ConversationMemory):
        """Test an unknown session has no history."""
        assert memory.get_relevant_history("missing", "query") == []
        assert memory.get_conversational_context("missing", "query") == ""
        assert memory.get_session_summary("missing") is None

    def test_context_rendering(self, memory: ConversationMemory, fake_clock: FakeClock):
        """Test turns render with role, age and a truncated preview."""
        memory.add_message("s1", "user", "x" * 200)
        fake_clock.advance(30)
        memory.add_message("s1", "assistant", "Short answer")
        fake_clock.advance(30)

        context = memory.get_conversational_context("s1", "follow-up")

        assert context.splitlines() == [
            f"- USER (1m ago): {'x' * 150}...",
            "- ASSISTANT (just now): Short answer",
        ]


class TestExpiry:
    """Test session expiry and cleanup."""

    def test_idle_session_expires_on_access(
        self, memory: ConversationMemory, fake_clock: FakeClock
    ):
        """Test a session idle past its TTL is forgotten."""
        memory.add_message("s1", "user", "hello")
        fake_clock.advance(61)

        assert memory.get_relevant_history("s1", "hello") == []
        assert len(memory) == 0
        assert memory.expired_count == 1

    def test_activity_extends_session(self, memory: ConversationMemory, fake_clock: FakeClock):
        """Test each turn refreshes the idle timer."""
        memory.add_message("s1", "user", "hello")
        fake_clock.advance(50)
        memory.add_message("s1", "user", "again")
        fake_clock.advance(50)

        assert len(memory.get_relevant_history("s1", "hello")) == 2

    def test_cleanup_expired(self, memory: ConversationMemory, fake_clock: FakeClock):
        """Test the sweep removes only idle sessions."""
        memory.add_message("old", "user", "hello")
        fake_clock.advance(61)
        memory.add_message("new", "user", "hello")

        assert memory.cleanup_expired() == 1
        assert "old" not in memory
        assert "new" in memory

    def test_stats(self, memory: ConversationMemory, fake_clock: FakeClock):
        """Test statistics count active sessions and common topics."""
        memory.add_message("old", "user", "React dashboard")
        fake_clock.advance(61)
        memory.add_message("new", "user", "React team")
        memory.add_message("new", "assistant", "React again")

        stats = memory.get_stats()

        assert stats.total_sessions == 2
        assert stats.active_sessions == 1
        assert stats.avg_messages_per_session == 1.5
        assert stats.common_topics[0] == "technology"

    def test_clear_session(self, memory: ConversationMemory):
        """Test a session can be forgotten explicitly."""
        memory.add_message("s1", "user", "hello")

        assert memory.clear_session("s1")
        assert not memory.clear_session("s1")


@pytest.mark.asyncio
class TestLifecycle:
    """Test the background sweep."""

    async def test_start_and_close(self, memory: ConversationMemory):
        """Test close stops the sweep and forgets sessions."""
        memory.add_message("s1", "user", "hello")
        memory.start_cleanup_task()
        assert memory._cleanup_task is not None

        await memory.close()

        assert memory._cleanup_task is None
        assert len(memory) == 0


class TestHelpers:
    """Test configuration and formatting helpers."""

    def test_config_from_settings(self, test_settings: Settings):
        """Test settings map onto the memory configuration."""
        settings = test_settings.model_copy(
            update={"conversation_max_messages": 7, "conversation_ttl_seconds": 90.0}
        )

        config = ConversationConfig.from_settings(settings)

        assert config.max_messages == 7
        assert config.session_ttl == 90.0

    @pytest.mark.parametrize(
        ("seconds", "label"),
        [(5, "just now"), (120, "2m ago"), (7200, "2h ago"), (172800, "2d ago")],
    )
    def test_time_ago(self, seconds: float, label: str):
        """Test relative age labels."""
        assert time_ago(seconds) == label
