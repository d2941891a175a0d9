"""Tests for the ChatService join / leave / send pipeline."""
import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from chatrelay.chat.errors import AlreadyPresent, MalformedInput, NotPresent, StoreUnavailable
from chatrelay.chat.schemas import Message, MessageKind


class TestJoinLeave:
    @pytest.mark.asyncio
    async def test_join_announces_and_publishes_resolved_roster(self, service, recorder_factory):
        await service.relay.start()
        rec = recorder_factory()
        service.relay.register("watcher", rec)

        roster = await service.join("alice")

        assert roster == ["alice"]
        history = await service.messages()
        assert history == [Message.system("alice", "alice just joined the chat room")]
        assert rec.events == [
            {"event": "message", "data": {
                "user": "alice", "message": "alice just joined the chat room", "kind": "system"}},
            {"event": "users", "data": ["alice"]},
        ]

    @pytest.mark.asyncio
    async def test_join_taken_name_is_rejected_without_side_effects(self, service):
        await service.join("alice")

        with pytest.raises(AlreadyPresent):
            await service.join("alice")

        assert len(await service.messages()) == 1
        assert await service.users() == ["alice"]

    @pytest.mark.asyncio
    async def test_leave_absent_user_is_rejected(self, service):
        with pytest.raises(NotPresent):
            await service.leave("ghost")
        assert await service.messages() == []

    @pytest.mark.asyncio
    async def test_username_is_stripped(self, service):
        await service.join("  alice  ")
        assert await service.users() == ["alice"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", [None, "", "   ", "x" * 17, 42, ["alice"]])
    async def test_malformed_username_never_reaches_store(self, service, name):
        with patch.object(service.presence, "join", AsyncMock()) as join:
            with pytest.raises(MalformedInput):
                await service.join(name)
            join.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_concurrent_join_race_for_carol(self, service):
        results = await asyncio.gather(
            service.join("carol"),
            service.join("carol"),
            return_exceptions=True,
        )

        assert sum(1 for r in results if isinstance(r, list)) == 1
        assert sum(1 for r in results if isinstance(r, AlreadyPresent)) == 1
        assert await service.users() == ["carol"]
        joined = [m for m in await service.messages() if m.kind is MessageKind.SYSTEM]
        assert len(joined) == 1


class TestSend:
    @pytest.mark.asyncio
    async def test_send_appends_then_publishes(self, service, recorder_factory):
        await service.relay.start()
        rec = recorder_factory()
        service.relay.register("watcher", rec)

        message = await service.send("alice", "hi")

        assert message == Message(author="alice", text="hi")
        assert (await service.messages())[-1] == message
        assert rec.events == [{"event": "message", "data": {"user": "alice", "message": "hi", "kind": "user"}}]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", [None, "", "  \n ", "x" * 101, 123, {"text": "hi"}])
    async def test_malformed_text_is_rejected(self, service, text):
        with pytest.raises(MalformedInput):
            await service.send("alice", text)
        assert await service.messages() == []

    @pytest.mark.asyncio
    async def test_author_is_not_checked_against_roster(self, service):
        message = await service.send("stranger", "hello")
        assert message.author == "stranger"

    @pytest.mark.asyncio
    async def test_persistence_failure_still_broadcasts(self, service, recorder_factory):
        await service.relay.start()
        rec = recorder_factory()
        service.relay.register("watcher", rec)

        with patch.object(service.history, "append", AsyncMock(side_effect=StoreUnavailable("down"))):
            message = await service.send("alice", "live only")

        assert message.text == "live only"
        assert rec.events[0]["data"]["message"] == "live only"
        assert await service.messages() == []

    @pytest.mark.asyncio
    async def test_publish_failure_is_surfaced_after_append(self, service):
        with patch.object(service.relay, "publish_message", AsyncMock(side_effect=StoreUnavailable("down"))):
            with pytest.raises(StoreUnavailable):
                await service.send("alice", "stored only")

        assert [m.text for m in await service.messages()] == ["stored only"]


class TestPartialFailures:
    @pytest.mark.asyncio
    async def test_join_survives_announcement_failures(self, service):
        with patch.object(service.history, "append", AsyncMock(side_effect=StoreUnavailable("down"))), \
             patch.object(service.relay, "publish_message", AsyncMock(side_effect=StoreUnavailable("down"))):
            roster = await service.join("alice")

        assert roster == ["alice"]
        assert await service.users() == ["alice"]

    @pytest.mark.asyncio
    async def test_registry_failure_aborts_join(self, service):
        with patch.object(service.presence._store, "set_add", AsyncMock(side_effect=StoreUnavailable("down"))):
            with pytest.raises(StoreUnavailable):
                await service.join("alice")

        assert await service.messages() == []

    @pytest.mark.asyncio
    async def test_roster_publish_failure_is_not_rolled_back(self, service):
        with patch.object(service.relay, "publish_roster", AsyncMock(side_effect=StoreUnavailable("down"))):
            await service.join("alice")

        assert await service.users() == ["alice"]


@pytest.mark.asyncio
async def test_alice_bob_scenario(service, recorder_factory):
    await service.relay.start()
    rec = recorder_factory()
    service.relay.register("watcher", rec)

    await service.join("alice")
    assert await service.users() == ["alice"]

    await service.join("bob")
    assert set(await service.users()) == {"alice", "bob"}

    await service.send("alice", "hi")
    assert (await service.messages())[-1] == Message(author="alice", text="hi")

    await service.leave("bob")
    assert await service.users() == ["alice"]
    assert (await service.messages())[-1] == Message.system("bob", "bob just left the chat room")

    rosters = [e["data"] for e in rec.events if e["event"] == "users"]
    assert rosters == [["alice"], ["alice", "bob"], ["alice"]]
