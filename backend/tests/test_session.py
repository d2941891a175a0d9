"""Tests for the ConnectionSession state machine."""
import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from chatrelay.chat.schemas import Message
from chatrelay.chat.session import ConnectionSession, SessionState
from chatrelay.config import LimitSettings


@pytest.fixture
def sent():
    return []


@pytest.fixture
def session(service, sent):
    async def send(event):
        sent.append(event)

    return ConnectionSession("alice", service, send, session_id="s-alice")


async def _drain(session):
    """Run the writer until the queue is empty, then stop it."""
    writer = asyncio.create_task(session.run_writer())
    for _ in range(20):
        if session._outbound.empty():
            break
        await asyncio.sleep(0)
    writer.cancel()
    try:
        await writer
    except asyncio.CancelledError:
        pass


class TestLifecycle:
    def test_starts_connecting(self, session):
        assert session.state is SessionState.CONNECTING
        assert session.relay.session_count == 0

    def test_subscribe_registers_with_relay(self, session):
        session.subscribe()
        assert session.state is SessionState.SUBSCRIBED
        assert session.relay.session_count == 1

    def test_subscribe_twice_is_an_error(self, session):
        session.subscribe()
        with pytest.raises(RuntimeError):
            session.subscribe()

    def test_close_unregisters_and_is_idempotent(self, session):
        session.subscribe()
        session.close()
        session.close()
        assert session.state is SessionState.CLOSED
        assert session.relay.session_count == 0

    def test_close_from_connecting(self, session):
        session.close()
        assert session.closed

    @pytest.mark.asyncio
    async def test_close_does_not_leave_presence(self, service, session):
        await service.join("alice")
        session.subscribe()

        session.close()

        assert await service.users() == ["alice"]


class TestDelivery:
    @pytest.mark.asyncio
    async def test_relay_events_are_written_in_order(self, service, session, sent):
        await service.relay.start()
        session.subscribe()

        await service.send("bob", "one")
        await service.send("bob", "two")
        await _drain(session)

        assert [e["data"]["message"] for e in sent] == ["one", "two"]

    @pytest.mark.asyncio
    async def test_events_after_close_are_discarded(self, service, session, sent):
        session.subscribe()
        session.close()

        await session.deliver({"event": "users", "data": []})
        await session.run_writer()

        assert sent == []

    @pytest.mark.asyncio
    async def test_writer_stops_on_close(self, session):
        session.subscribe()
        writer = asyncio.create_task(session.run_writer())
        await asyncio.sleep(0)

        session.close()
        await asyncio.wait_for(writer, timeout=1)

        assert writer.done()

    @pytest.mark.asyncio
    async def test_snapshot_shape(self, session, sent):
        await session.send_snapshot([Message(author="bob", text="hi")], ["alice", "bob"])

        assert sent == [
            {"event": "history", "data": [{"user": "bob", "message": "hi", "kind": "user"}]},
            {"event": "users", "data": ["alice", "bob"]},
        ]


class TestActions:
    @pytest.mark.asyncio
    async def test_message_action_goes_through_service(self, service, session):
        session.subscribe()

        task = session.submit({"event": "message", "data": {"message": "hello"}})
        await task

        assert (await service.messages())[-1] == Message(author="alice", text="hello")

    @pytest.mark.asyncio
    async def test_leave_action_removes_presence(self, service, session):
        await service.join("alice")
        session.subscribe()

        await session.submit({"event": "leave"})

        assert await service.users() == []

    @pytest.mark.asyncio
    async def test_rejected_action_reports_error(self, session, sent):
        session.subscribe()

        await session.submit({"event": "leave"})
        await session.submit({"event": "message", "data": {"message": "   "}})
        await session.submit({"event": "shout"})
        await _drain(session)

        errors = [e for e in sent if e["event"] == "error"]
        assert len(errors) == 3
        assert "not in the room" in errors[0]["data"]["error"]

    @pytest.mark.asyncio
    async def test_submit_after_close_is_ignored(self, session):
        session.close()
        assert session.submit({"event": "leave"}) is None

    @pytest.mark.asyncio
    async def test_in_flight_action_completes_after_close(self, service, session, sent):
        session.subscribe()
        gate = asyncio.Event()
        original_append = service.history.append

        async def slow_append(message):
            await gate.wait()
            return await original_append(message)

        with patch.object(service.history, "append", AsyncMock(side_effect=slow_append)):
            task = session.submit({"event": "message", "data": {"message": "late"}})
            await asyncio.sleep(0)
            session.close()
            gate.set()
            await session.wait_pending()

        assert task.done()
        assert [m.text for m in await service.messages()] == ["late"]
        assert sent == []

    @pytest.mark.asyncio
    async def test_non_string_message_reports_error(self, service, session, sent):
        session.subscribe()

        task = session.submit({"event": "message", "data": {"message": 123}})
        await task
        await _drain(session)

        assert task.exception() is None
        assert sent == [{"event": "error", "data": {"error": "Message text must be a string"}}]
        assert await service.messages() == []


class TestTransportFailure:
    @pytest.mark.asyncio
    async def test_writer_closes_session_when_send_fails(self, service):
        async def send(event):
            raise RuntimeError("socket already closed")

        session = ConnectionSession("alice", service, send, session_id="s-alice")
        session.subscribe()
        writer = asyncio.create_task(session.run_writer())

        await session.deliver({"event": "users", "data": []})
        await asyncio.wait_for(writer, timeout=1)

        assert session.closed
        assert service.relay.session_count == 0

    @pytest.mark.asyncio
    async def test_lagging_session_is_dropped_by_relay(self, service):
        service.limits = LimitSettings(max_pending_events=2)
        session = ConnectionSession("alice", service, AsyncMock(), session_id="s-alice")
        await service.relay.start()
        session.subscribe()

        # No writer is running, so the third event overflows the backlog.
        for text in ("one", "two", "three"):
            await service.send("bob", text)

        assert session.closed
        assert service.relay.session_count == 0
