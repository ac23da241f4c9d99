from __future__ import annotations

import asyncio

import pytest

from relay_chat.application.dto.commands import SendMessageCommand
from relay_chat.application.exceptions import TransportError
from relay_chat.client.engine import MessageSyncEngine
from relay_chat.client.outbox import InMemoryOutboxStore, OfflineOutbox
from relay_chat.domain.value_objects.enums import DeliveryState
from relay_chat.infrastructure.store.memory import InMemoryMessageStore
from relay_chat.infrastructure.ws.protocol import message_to_wire
from relay_chat.services.message_pipeline import MutationPipeline
from tests.conftest import FakeSession, make_message, settle


@pytest.fixture
def server_store():
    return InMemoryMessageStore()


@pytest.fixture
def pipeline(server_store):
    return MutationPipeline(server_store)


def _engine(pipeline, principal, *, connected=True, history=None):
    session = FakeSession(pipeline, principal, connected=connected)
    outbox = OfflineOutbox(InMemoryOutboxStore())
    engine = MessageSyncEngine(principal, session, outbox, lambda: "tok", history=history)
    return engine, session, outbox


class FakeHistory:
    def __init__(self, pages):
        self.pages = pages
        self.calls: list[tuple[str | None, int]] = []

    async def fetch_page(self, limit, before=None):
        self.calls.append((before, limit))
        index = int(before[1:]) if before else 0
        more = index < len(self.pages) - 1
        return self.pages[index], f"p{index + 1}" if more else None


@pytest.mark.asyncio
async def test_send_online_confirms_single_entry(pipeline, alice):
    engine, session, _ = _engine(pipeline, alice)

    msg = await engine.send("  hi ")

    assert msg is not None and msg.is_confirmed
    [entry] = engine.messages
    assert entry.text == "hi"
    assert entry.id == msg.id
    assert session.requests == [("sendMessage", {"text": "hi", "correlationId": msg.correlation_id})]


@pytest.mark.asyncio
async def test_repeated_echo_never_duplicates(pipeline, alice):
    engine, session, _ = _engine(pipeline, alice)
    msg = await engine.send("hi")

    echo = message_to_wire(msg)
    for _ in range(3):
        await session.fire("sendMessage", echo)
        await session.fire("message", echo)

    assert len(engine.messages) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "   "])
async def test_blank_send_is_noop(pipeline, alice, text):
    engine, session, outbox = _engine(pipeline, alice)

    assert await engine.send(text) is None

    assert engine.messages == []
    assert session.requests == []
    assert await outbox.pending() == []


@pytest.mark.asyncio
async def test_offline_send_is_queued_then_emitted_once_on_connect(pipeline, server_store, alice):
    engine, session, outbox = _engine(pipeline, alice, connected=False)

    draft = await engine.send("queued")

    assert draft.delivery_state == DeliveryState.PENDING
    assert draft.id is None
    assert len(await outbox.pending()) == 1
    assert session.requests == []

    await session.go_online()
    await settle()

    [entry] = engine.messages
    assert entry.is_confirmed
    assert [kind for kind, _ in session.requests] == ["sendMessage"]
    assert await outbox.pending() == []
    assert (await server_store.list_page(0, 10))[1] == 1


@pytest.mark.asyncio
async def test_offline_queue_replays_in_enqueue_order(pipeline, server_store, alice):
    engine, session, _ = _engine(pipeline, alice, connected=False)
    for text in ("one", "two", "three"):
        await engine.send(text)

    await session.go_online()
    await settle()

    assert [m.text for m in engine.messages] == ["one", "two", "three"]
    newest_first, _ = await server_store.list_page(0, 10)
    assert [m.text for m in newest_first] == ["three", "two", "one"]


@pytest.mark.asyncio
async def test_mutations_of_queued_message_apply_after_create(pipeline, server_store, alice):
    engine, session, _ = _engine(pipeline, alice, connected=False)
    draft = await engine.send("queued")
    assert await engine.edit(draft.correlation_id, "edited")

    await session.go_online()
    await settle()

    assert [kind for kind, _ in session.requests] == ["sendMessage", "editMessage"]
    [entry] = engine.messages
    assert entry.text == "edited"
    assert entry.is_edited
    assert (await server_store.get(entry.id)).text == "edited"


@pytest.mark.asyncio
async def test_two_clients_see_the_same_message(pipeline, alice, bob):
    engine_a, session_a, _ = _engine(pipeline, alice)
    engine_b, session_b, _ = _engine(pipeline, bob)
    session_a.peers.append(session_b)
    session_b.peers.append(session_a)

    await engine_a.send("hi")

    [a] = engine_a.messages
    [b] = engine_b.messages
    assert a.id == b.id
    assert a.text == b.text == "hi"
    assert b.author_id == alice.id


@pytest.mark.asyncio
async def test_edit_requires_ownership_and_known_target(pipeline, alice, bob):
    engine_a, session_a, _ = _engine(pipeline, alice)
    engine_b, session_b, _ = _engine(pipeline, bob)
    session_a.peers.append(session_b)
    msg = await engine_a.send("hi")

    assert not await engine_b.edit(msg.id, "hijack")
    assert not await engine_b.edit("unknown", "x")
    assert session_b.requests == []


@pytest.mark.asyncio
async def test_edit_rolls_back_when_server_rejects(pipeline, server_store, alice):
    engine, _, _ = _engine(pipeline, alice)
    msg = await engine.send("hi")
    await server_store.delete(msg.id)

    assert await engine.edit(msg.id, "changed")

    [entry] = engine.messages
    assert entry.text == "hi"
    assert not entry.is_edited


@pytest.mark.asyncio
async def test_delete_is_applied_and_idempotent(pipeline, server_store, alice):
    engine, session, _ = _engine(pipeline, alice)
    msg = await engine.send("bye")

    assert await engine.delete(msg.id)
    assert engine.find(msg.id).is_deleted
    assert await server_store.get(msg.id) is None

    assert not await engine.delete(msg.id)
    assert [kind for kind, _ in session.requests] == ["sendMessage", "deleteMessage"]
    assert session.requests[1][1] == msg.id


@pytest.mark.asyncio
async def test_deleting_queued_message_never_reaches_server(pipeline, alice):
    engine, session, outbox = _engine(pipeline, alice, connected=False)
    draft = await engine.send("oops")

    assert await engine.delete(draft.correlation_id)
    assert engine.messages == []
    assert await outbox.pending() == []

    await session.go_online()
    await settle()
    assert session.requests == []


@pytest.mark.asyncio
async def test_late_echo_of_deleted_draft_is_removed_remotely(pipeline, server_store, alice):
    engine, session, _ = _engine(pipeline, alice, connected=False)
    draft = await engine.send("oops")
    await engine.delete(draft.correlation_id)

    # an earlier attempt did reach the server before the local delete
    outcome = await pipeline.handle(
        SendMessageCommand(text="oops", correlation_id=draft.correlation_id), alice,
    )
    session.connected = True
    await session.fire("sendMessage", message_to_wire(outcome.message))
    await settle()

    assert engine.messages == []
    assert ("deleteMessage", outcome.message.id) in session.requests
    assert await server_store.get(outcome.message.id) is None


@pytest.mark.asyncio
async def test_toggle_reaction_twice_restores_state(pipeline, server_store, alice):
    engine, _, _ = _engine(pipeline, alice)
    msg = await engine.send("hi")

    await engine.toggle_reaction(msg.id, "👍")
    assert engine.find(msg.id).reactions == {"👍": frozenset({alice.id})}

    await engine.toggle_reaction(msg.id, "👍")
    assert engine.find(msg.id).reactions == {}
    assert (await server_store.get(msg.id)).reactions == {}


@pytest.mark.asyncio
async def test_reaction_broadcast_replaces_local_map(pipeline, alice):
    engine, session, _ = _engine(pipeline, alice)
    msg = await engine.send("hi")
    session.connected = False
    await engine.toggle_reaction(msg.id, "👍")

    server_view = msg.with_reactions({"🔥": frozenset({"u-bob"})})
    await session.fire("toggleReaction", message_to_wire(server_view))

    assert engine.find(msg.id).reactions == {"🔥": frozenset({"u-bob"})}


@pytest.mark.asyncio
async def test_mutation_for_unknown_message_is_adopted(pipeline, alice):
    engine, session, _ = _engine(pipeline, alice)
    stranger = make_message(message_id="m-x", correlation_id=None, author_id="u-bob", text="old")

    await session.fire("editMessage", message_to_wire(stranger.with_text("older", stranger.created_at)))

    [entry] = engine.messages
    assert entry.id == "m-x"
    assert entry.text == "older"


@pytest.mark.asyncio
async def test_rejected_create_is_marked_failed_and_can_be_retried(server_store, alice):
    pipeline = MutationPipeline(server_store, max_length=5)
    engine, session, _ = _engine(pipeline, alice)

    msg = await engine.send("too long")
    assert msg.delivery_state == DeliveryState.FAILED

    session.pipeline = MutationPipeline(server_store)
    assert await engine.retry(msg.correlation_id)

    [entry] = engine.messages
    assert entry.is_confirmed
    assert entry.text == "too long"


@pytest.mark.asyncio
async def test_transport_failure_defers_to_outbox(pipeline, alice):
    engine, session, outbox = _engine(pipeline, alice)
    session.fail_with = TransportError("dropped")

    msg = await engine.send("hi")
    assert msg.delivery_state == DeliveryState.PENDING
    assert len(await outbox.pending()) == 1

    session.fail_with = None
    await session.go_online()
    await settle()

    assert engine.messages[0].is_confirmed
    assert await outbox.pending() == []


@pytest.mark.asyncio
async def test_reply_clears_compose_state(pipeline, alice):
    engine, session, _ = _engine(pipeline, alice)
    parent = await engine.send("question")

    engine.start_reply(parent.id)
    assert engine.replying_to == parent.id
    reply = await engine.reply(parent.id, "answer")

    assert engine.replying_to is None
    assert reply.parent_id == parent.id
    assert reply.is_confirmed
    assert session.requests[-1][0] == "replyToMessage"
    assert len(engine.messages) == 2


@pytest.mark.asyncio
async def test_history_loads_behind_pending_entries(pipeline, alice):
    pages = [
        [message_to_wire(make_message(message_id=f"m{n}", correlation_id=None, text=f"t{n}")) for n in (4, 3)],
        [message_to_wire(make_message(message_id=f"m{n}", correlation_id=None, text=f"t{n}")) for n in (2, 1)],
    ]
    history = FakeHistory(pages)
    engine, _, _ = _engine(pipeline, alice, connected=False, history=history)
    await engine.send("draft")

    await engine.refresh()
    assert [m.text for m in engine.messages] == ["t3", "t4", "draft"]
    assert engine.has_more

    assert await engine.load_more()
    assert [m.text for m in engine.messages] == ["t1", "t2", "t3", "t4", "draft"]
    assert not engine.has_more
    assert not await engine.load_more()
    assert history.calls == [(None, 20), ("p1", 20)]


@pytest.mark.asyncio
async def test_connect_hook_flushes_then_refreshes(pipeline, alice):
    history = FakeHistory([[]])
    engine, session, _ = _engine(pipeline, alice, connected=False, history=history)
    await engine.send("queued")

    await session.go_online()
    await settle()

    assert history.calls == [(None, 20)]
    assert session.requests[0][0] == "sendMessage"


@pytest.mark.asyncio
async def test_server_notices_are_recorded(pipeline, alice):
    engine, session, _ = _engine(pipeline, alice)
    notices = []
    engine.on_notice(lambda kind, data: notices.append(kind))

    await session.fire("onlineUsers", [{"id": "u-alice", "username": "alice"}])
    await session.fire("rateLimit", {"eventType": "sendMessage", "message": "slow", "retryAfter": 30})
    await session.fire("error", {"message": "Message text is required"})

    assert engine.online_users == [{"id": "u-alice", "username": "alice"}]
    assert notices == ["rateLimit", "error"]
    assert engine.last_notice == ("error", {"message": "Message text is required"})


class LostAckSession(FakeSession):
    """Applies requests on the server but drops the next ``lose`` acknowledgements."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.lose = 0

    async def request(self, event, data, timeout=None):
        ack = await super().request(event, data, timeout)
        if self.lose:
            self.lose -= 1
            raise TransportError("acknowledgement lost")
        return ack


class GatedSession(FakeSession):
    """Holds every request until ``gate`` is set."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.gate = asyncio.Event()

    async def request(self, event, data, timeout=None):
        await self.gate.wait()
        return await super().request(event, data, timeout)


def _engine_with(session, principal):
    outbox = OfflineOutbox(InMemoryOutboxStore())
    return MessageSyncEngine(principal, session, outbox, lambda: "tok"), outbox


@pytest.mark.asyncio
async def test_reaction_replayed_after_lost_ack_keeps_vote(pipeline, server_store, alice):
    session = LostAckSession(pipeline, alice)
    engine, outbox = _engine_with(session, alice)
    msg = await engine.send("hi")

    session.lose = 1
    await engine.toggle_reaction(msg.id, "👍")
    assert len(await outbox.pending()) == 1

    await engine.flush_outbox()

    toggles = [data for kind, data in session.requests if kind == "toggleReaction"]
    assert toggles == [{"messageId": msg.id, "reaction": "👍", "add": True}] * 2
    assert (await server_store.get(msg.id)).reactions == {"👍": frozenset({alice.id})}
    assert engine.find(msg.id).reactions == {"👍": frozenset({alice.id})}
    assert await outbox.pending() == []


@pytest.mark.asyncio
async def test_delete_replayed_after_lost_ack_stays_deleted(pipeline, server_store, alice):
    session = LostAckSession(pipeline, alice)
    engine, outbox = _engine_with(session, alice)
    msg = await engine.send("bye")

    session.lose = 1
    await engine.delete(msg.id)
    await engine.flush_outbox()

    assert engine.find(msg.id).is_deleted
    assert await server_store.get(msg.id) is None
    assert await outbox.pending() == []


@pytest.mark.asyncio
async def test_online_edit_waits_behind_queued_edit(pipeline, server_store, alice):
    engine, session, outbox = _engine(pipeline, alice)
    msg = await engine.send("original")

    session.connected = False
    await engine.edit(msg.id, "offline-edit")
    session.connected = True
    await engine.edit(msg.id, "newest-edit")

    await engine.flush_outbox()
    await settle()

    edits = [data["newText"] for kind, data in session.requests if kind == "editMessage"]
    assert edits == ["offline-edit", "newest-edit"]
    assert (await server_store.get(msg.id)).text == "newest-edit"
    assert engine.find(msg.id).text == "newest-edit"
    assert await outbox.pending() == []


@pytest.mark.asyncio
async def test_edit_queued_before_its_create_is_sent_after_it(pipeline, server_store, alice):
    session = GatedSession(pipeline, alice)
    engine, outbox = _engine_with(session, alice)

    sending = asyncio.create_task(engine.send("draft"))
    await settle()
    [draft] = engine.messages
    assert await engine.edit(draft.correlation_id, "edited")

    session.fail_with = TransportError("dropped")
    session.gate.set()
    await sending
    session.fail_with = None
    assert [e.kind for e in await outbox.pending()] == ["editMessage", "sendMessage"]

    await engine.flush_outbox()

    [entry] = engine.messages
    assert entry.is_confirmed
    assert (await server_store.get(entry.id)).text == "edited"
    assert [kind for kind, _ in session.requests] == ["sendMessage", "sendMessage", "editMessage"]
    assert await outbox.pending() == []


@pytest.mark.asyncio
async def test_rejected_queued_edit_restores_text(pipeline, server_store, alice):
    engine, session, outbox = _engine(pipeline, alice)
    msg = await engine.send("hi")

    session.connected = False
    await engine.edit(msg.id, "changed offline")
    await server_store.delete(msg.id)
    session.connected = True
    await engine.flush_outbox()

    entry = engine.find(msg.id)
    assert entry.text == "hi"
    assert not entry.is_edited
    assert await outbox.pending() == []


@pytest.mark.asyncio
async def test_rejected_queued_reaction_restores_map(pipeline, server_store, alice):
    engine, session, _ = _engine(pipeline, alice)
    msg = await engine.send("hi")

    session.connected = False
    await engine.toggle_reaction(msg.id, "👍")
    await server_store.put((await server_store.get(msg.id)).tombstone())
    session.connected = True
    await engine.flush_outbox()

    assert engine.find(msg.id).reactions == {}
