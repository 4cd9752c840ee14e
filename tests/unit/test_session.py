"""
tests/unit/test_session.py — Session State Machine Unit Tests

Covers:
  - lifecycle transitions (legal and illegal)
  - append-only history, active-only mutation
  - checkpoint versioning + checksum, tamper detection on reload
  - branching isolation
  - thinking archive and stats bookkeeping
  - SessionManager create / open / branch / most_recent / close_all
"""

from __future__ import annotations

import pytest

from llamacli.brain.types import Message, ThinkingBlock, ToolCallRecord, ToolResult, TokenUsage
from llamacli.exceptions import (
    BranchError,
    InvalidSessionTransition,
    SessionIntegrityError,
    SessionNotActiveError,
    SessionNotFoundError,
)
from llamacli.safety.shell_gate import ShellSafetyGate
from llamacli.session import (
    InMemoryStorageBackend,
    Session,
    SessionManager,
    SessionStatus,
)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


def make_session(storage=None, **kwargs) -> Session:
    return Session.create(name="test", storage=storage, **kwargs)


def with_messages(session: Session, count: int) -> Session:
    for i in range(count):
        session.append_message(Message.user(f"message {i}"))
    return session


# ─────────────────────────────────────────────────────────────────────────────
# Lifecycle
# ─────────────────────────────────────────────────────────────────────────────


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_new_session_is_active(self):
        session = make_session()
        assert session.status == SessionStatus.ACTIVE
        assert session.is_active
        assert session.version == 0

    @pytest.mark.asyncio
    async def test_pause_and_resume(self):
        session = make_session()
        await session.pause()
        assert session.status == SessionStatus.PAUSED
        await session.resume()
        assert session.is_active

    @pytest.mark.asyncio
    async def test_completed_is_terminal_except_error(self):
        session = make_session()
        await session.complete()
        with pytest.raises(InvalidSessionTransition):
            await session.resume()
        with pytest.raises(InvalidSessionTransition):
            await session.archive()
        await session.fail("disk on fire")
        assert session.status == SessionStatus.ERROR
        assert session.metadata.error_reason == "disk on fire"

    @pytest.mark.asyncio
    async def test_paused_can_be_archived(self):
        session = make_session()
        await session.pause()
        await session.archive()
        assert session.status == SessionStatus.ARCHIVED

    @pytest.mark.asyncio
    async def test_cannot_complete_paused(self):
        session = make_session()
        await session.pause()
        with pytest.raises(InvalidSessionTransition):
            await session.complete()

    @pytest.mark.asyncio
    async def test_fail_is_idempotent(self):
        session = make_session()
        await session.fail("first")
        version = session.version
        await session.fail("second")
        assert session.metadata.error_reason == "first"
        assert session.version == version

    @pytest.mark.asyncio
    async def test_lifecycle_changes_checkpoint(self):
        storage = InMemoryStorageBackend()
        session = make_session(storage=storage)
        await session.pause()
        stored = await storage.load(session.id)
        assert stored.metadata.status == SessionStatus.PAUSED
        assert stored.metadata.version == 1


# ─────────────────────────────────────────────────────────────────────────────
# History
# ─────────────────────────────────────────────────────────────────────────────


class TestHistory:
    def test_append_keeps_order(self):
        session = with_messages(make_session(), 3)
        assert [m.content for m in session.messages] == ["message 0", "message 1", "message 2"]
        assert session.metadata.stats.message_count == 3
        assert len(session) == 3

    def test_messages_view_is_immutable(self):
        session = with_messages(make_session(), 1)
        assert isinstance(session.messages, tuple)

    @pytest.mark.asyncio
    async def test_append_requires_active(self):
        session = make_session()
        await session.pause()
        with pytest.raises(SessionNotActiveError):
            session.append_message(Message.user("hello"))

    def test_thinking_archive_drops_blank(self):
        session = make_session()
        assert session.archive_thinking(ThinkingBlock(content="plan")) is True
        assert session.archive_thinking(ThinkingBlock(content="   ")) is False
        assert [b.content for b in session.thinking_blocks] == ["plan"]
        session.clear_thinking()
        assert session.thinking_blocks == ()

    def test_stats(self):
        session = make_session()
        ok = ToolCallRecord(id="1", tool_name="echo")
        ok.finish(ToolResult.success("hi"))
        bad = ToolCallRecord(id="2", tool_name="echo")
        bad.finish(ToolResult.error("nope"))
        session.record_tool_result(ok)
        session.record_tool_result(bad)
        session.record_token_usage(TokenUsage(input_tokens=5, output_tokens=7))
        session.record_turn()

        stats = session.metadata.stats
        assert stats.tool_call_count == 2
        assert stats.successful_tool_calls == 1
        assert stats.failed_tool_calls == 1
        assert stats.total_tokens_used == 12
        assert session.status_summary()["turns"] == 1


# ─────────────────────────────────────────────────────────────────────────────
# Checkpoint / integrity
# ─────────────────────────────────────────────────────────────────────────────


class TestCheckpoint:
    @pytest.mark.asyncio
    async def test_version_and_checksum(self):
        storage = InMemoryStorageBackend()
        session = with_messages(make_session(storage=storage), 2)
        assert await session.checkpoint() == 1
        first = session.metadata.checksum
        assert first and len(first) == 64

        session.append_message(Message.user("more"))
        assert await session.checkpoint() == 2
        assert session.metadata.checksum != first

    @pytest.mark.asyncio
    async def test_round_trip_verifies(self):
        storage = InMemoryStorageBackend()
        session = with_messages(make_session(storage=storage), 2)
        await session.checkpoint()

        restored = Session.from_persisted(await storage.load(session.id), storage=storage)
        assert [m.content for m in restored.messages] == ["message 0", "message 1"]
        assert restored.version == session.version

    @pytest.mark.asyncio
    async def test_tampered_history_detected(self):
        storage = InMemoryStorageBackend()
        session = with_messages(make_session(storage=storage), 2)
        await session.checkpoint()

        persisted = await storage.load(session.id)
        persisted.messages[0] = Message.user("I never said this")
        with pytest.raises(SessionIntegrityError):
            Session.from_persisted(persisted)

    @pytest.mark.asyncio
    async def test_missing_checksum_rejected(self):
        storage = InMemoryStorageBackend()
        session = with_messages(make_session(storage=storage), 2)
        await session.checkpoint()

        persisted = await storage.load(session.id)
        persisted.messages[0] = Message.user("I never said this")
        persisted.metadata.checksum = None
        with pytest.raises(SessionIntegrityError, match="no checksum"):
            Session.from_persisted(persisted)

    @pytest.mark.asyncio
    async def test_tampered_allowlist_detected(self, tmp_path):
        storage = InMemoryStorageBackend()
        session = make_session(storage=storage, shell=ShellSafetyGate(working_directory=tmp_path))
        await session.checkpoint()

        persisted = await storage.load(session.id)
        persisted.shell_allowlist = ["rm"]
        fresh = ShellSafetyGate(working_directory=tmp_path)
        with pytest.raises(SessionIntegrityError):
            Session.from_persisted(persisted, shell=fresh)
        assert fresh.allowlist == []
        assert fresh.classify("rm -rf /tmp/x").needs_confirmation

    @pytest.mark.asyncio
    async def test_tampered_thinking_detected(self):
        storage = InMemoryStorageBackend()
        session = make_session(storage=storage)
        session.archive_thinking(ThinkingBlock(content="plan A"))
        await session.checkpoint()

        persisted = await storage.load(session.id)
        persisted.thinking_blocks = [ThinkingBlock(content="plan B")]
        with pytest.raises(SessionIntegrityError):
            Session.from_persisted(persisted)

    @pytest.mark.asyncio
    async def test_tampered_settings_detected(self):
        storage = InMemoryStorageBackend()
        session = make_session(storage=storage, settings_snapshot={"model": "llama3.1"})
        await session.checkpoint()

        persisted = await storage.load(session.id)
        persisted.settings = {"model": "something-else"}
        with pytest.raises(SessionIntegrityError):
            Session.from_persisted(persisted)

    @pytest.mark.asyncio
    async def test_allowlist_persisted(self, tmp_path):
        storage = InMemoryStorageBackend()
        gate = ShellSafetyGate(working_directory=tmp_path)
        gate.allow("rm x")
        session = make_session(storage=storage, shell=gate)
        await session.checkpoint()

        fresh = ShellSafetyGate(working_directory=tmp_path)
        Session.from_persisted(await storage.load(session.id), shell=fresh)
        assert fresh.allowlist == ["rm"]


# ─────────────────────────────────────────────────────────────────────────────
# Branching
# ─────────────────────────────────────────────────────────────────────────────


class TestBranching:
    def test_branch_copies_prefix(self):
        parent = with_messages(make_session(), 4)
        child = parent.branch(2, name="alt")
        assert [m.content for m in child.messages] == ["message 0", "message 1"]
        assert child.metadata.parent_session_id == parent.id
        assert child.metadata.branch_point == 2
        assert child.is_active
        assert parent.metadata.branches[0].id == child.id

    def test_branches_are_isolated(self):
        parent = with_messages(make_session(), 2)
        child = parent.branch(2)
        child.append_message(Message.user("only in child"))
        parent.append_message(Message.user("only in parent"))
        assert [m.content for m in parent.messages][-1] == "only in parent"
        assert [m.content for m in child.messages][-1] == "only in child"
        assert len(parent) == 3 and len(child) == 3

    def test_branch_out_of_range(self):
        parent = with_messages(make_session(), 2)
        with pytest.raises(BranchError):
            parent.branch(3)
        with pytest.raises(BranchError):
            parent.branch(-1)

    def test_branch_at_zero_is_empty(self):
        child = with_messages(make_session(), 2).branch(0)
        assert child.messages == ()

    @pytest.mark.asyncio
    async def test_cannot_branch_completed(self):
        session = make_session()
        await session.complete()
        with pytest.raises(BranchError):
            session.branch(0)


# ─────────────────────────────────────────────────────────────────────────────
# SessionManager
# ─────────────────────────────────────────────────────────────────────────────


class TestSessionManager:
    @pytest.mark.asyncio
    async def test_create_gives_each_session_a_shell(self, tmp_path):
        manager = SessionManager()
        a = await manager.create(name="a", working_directory=tmp_path)
        b = await manager.create(name="b", working_directory=tmp_path)
        assert a.shell is not None and b.shell is not None
        assert a.shell is not b.shell
        assert a.metadata.working_directory == str(tmp_path.resolve())
        assert a.version == 1
        assert manager.count == 2

    @pytest.mark.asyncio
    async def test_open_cached_and_from_storage(self, tmp_path):
        storage = InMemoryStorageBackend()
        manager = SessionManager(storage=storage)
        assert manager.storage is storage
        session = await manager.create(working_directory=tmp_path)
        assert await manager.open(session.id) is session

        other = SessionManager(storage=storage)
        reopened = await other.open(session.id)
        assert reopened is not session
        assert reopened.id == session.id
        assert reopened.shell is not None

    @pytest.mark.asyncio
    async def test_open_unknown(self):
        with pytest.raises(SessionNotFoundError):
            await SessionManager().open("session_missing")

    @pytest.mark.asyncio
    async def test_branch_copies_allowlist(self, tmp_path):
        manager = SessionManager()
        parent = await manager.create(working_directory=tmp_path)
        parent.shell.allow("rm x")
        parent.append_message(Message.user("hi"))
        child = await manager.branch(parent, 1)
        assert child.shell.allowlist == ["rm"]
        assert child.shell is not parent.shell
        assert await manager.get(child.id) is child

    @pytest.mark.asyncio
    async def test_most_recent_skips_finished(self, tmp_path):
        manager = SessionManager()
        first = await manager.create(name="first", working_directory=tmp_path)
        second = await manager.create(name="second", working_directory=tmp_path)
        await second.complete()
        recent = await manager.most_recent()
        assert recent.id == first.id

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path):
        manager = SessionManager()
        session = await manager.create(working_directory=tmp_path)
        assert await manager.delete(session.id) is True
        assert await manager.delete(session.id) is False
        assert manager.count == 0

    @pytest.mark.asyncio
    async def test_close_all_checkpoints(self, tmp_path):
        manager = SessionManager()
        session = await manager.create(working_directory=tmp_path)
        session.append_message(Message.user("unsaved"))
        await manager.close_all()
        stored = await manager.storage.load(session.id)
        assert len(stored.messages) == 1
        assert stored.metadata.version == 2
