"""Two clients talking through the in-process backend."""
from __future__ import annotations

import pytest
import pytest_asyncio

from chat_sync.application.dto.session import Session
from chat_sync.application.exceptions import AuthorizationDenied
from chat_sync.domain.value_objects.enums import ConnectionState, MessageStatus
from chat_sync.infrastructure.memory.store import InMemoryHub
from chat_sync.infrastructure.memory.transport import LoopbackHub, LoopbackTransport
from chat_sync.services.client import ChatClient
from tests.conftest import CONVERSATION_ID, wait_until


@pytest.fixture
def backend():
    hub = InMemoryHub()
    hub.add_conversation({"alice", "bob"}, conversation_id=CONVERSATION_ID, display_name="Team")
    return hub, LoopbackHub()


def _client(backend, session: Session, settings) -> tuple[ChatClient, LoopbackTransport]:
    hub, loopback = backend
    transport = LoopbackTransport(loopback)
    return ChatClient(transport, hub.store_for(session.user_id, session.display_name), settings), transport


@pytest_asyncio.fixture
async def clients(backend, alice, bob, fast_settings):
    alice_client, alice_transport = _client(backend, alice, fast_settings)
    bob_client, _ = _client(backend, bob, fast_settings)
    await alice_client.start(alice)
    await bob_client.start(bob)
    yield alice_client, bob_client, alice_transport
    await alice_client.stop()
    await bob_client.stop()


def _contents(handle):
    return [(m.content, m.status) for m in handle.messages()]


@pytest.mark.asyncio
async def test_message_reaches_other_client_once(clients):
    alice, bob, _ = clients
    a_view = await alice.open_conversation(CONVERSATION_ID)
    b_view = await bob.open_conversation(CONVERSATION_ID)

    result = await alice.send(CONVERSATION_ID, "hello bob")

    assert result.success
    assert _contents(a_view) == [("hello bob", MessageStatus.CONFIRMED)]
    assert _contents(b_view) == [("hello bob", MessageStatus.CONFIRMED)]
    assert a_view.messages()[0].id == b_view.messages()[0].id


@pytest.mark.asyncio
async def test_unread_counter_for_unopened_conversation(clients):
    alice, bob, _ = clients

    await alice.send(CONVERSATION_ID, "are you there?")
    assert bob.current.directory.get(CONVERSATION_ID).unread_count == 1

    handle = await bob.open_conversation(CONVERSATION_ID)
    assert bob.current.directory.get(CONVERSATION_ID).unread_count == 0
    assert [m.content for m in handle.messages()] == ["are you there?"]


@pytest.mark.asyncio
async def test_typing_indicator_and_stop_on_send(clients):
    alice, bob, _ = clients
    await bob.open_conversation(CONVERSATION_ID)

    await alice.keystroke(CONVERSATION_ID)
    assert [r.user_id for r in bob.current.presence.typing_users(CONVERSATION_ID)] == ["alice"]

    await alice.send(CONVERSATION_ID, "done typing")
    assert bob.current.presence.typing_users(CONVERSATION_ID) == []


@pytest.mark.asyncio
async def test_presence_follows_sessions(clients):
    alice, bob, _ = clients

    assert bob.current.presence.online_users() == ["alice", "bob"]

    await alice.on_auth_change(None)

    assert alice.current is None
    assert alice.connection.state == ConnectionState.DISCONNECTED
    assert bob.current.presence.online_users() == ["bob"]


@pytest.mark.asyncio
async def test_edit_delete_and_read_receipts_propagate(clients):
    alice, bob, _ = clients
    a_view = await alice.open_conversation(CONVERSATION_ID)
    b_view = await bob.open_conversation(CONVERSATION_ID)
    sent = (await alice.send(CONVERSATION_ID, "helo")).message
    extra = (await alice.send(CONVERSATION_ID, "oops")).message

    assert (await alice.edit(sent.id, "hello")).success
    assert (await alice.delete(extra.id)).success
    assert (await bob.mark_read(CONVERSATION_ID, [sent.id])).success

    assert [m.content for m in b_view.messages()] == ["hello"]
    assert a_view.reconciler.get(sent.id).read_by == {"alice", "bob"}


@pytest.mark.asyncio
async def test_cannot_edit_someone_elses_message(clients):
    alice, bob, _ = clients
    await bob.open_conversation(CONVERSATION_ID)
    sent = (await alice.send(CONVERSATION_ID, "mine")).message

    result = await bob.edit(sent.id, "now mine")

    assert isinstance(result.error, AuthorizationDenied)


@pytest.mark.asyncio
async def test_reconnect_catches_up_missed_messages(clients, backend):
    alice, bob, alice_transport = clients
    hub, loopback = backend
    a_view = await alice.open_conversation(CONVERSATION_ID)

    hub.hold()
    await loopback.drop(alice_transport)
    await bob.send(CONVERSATION_ID, "while you were away")
    hub.drop_held()

    await wait_until(lambda: alice.connection.is_connected)
    await wait_until(lambda: [m.content for m in a_view.messages()] == ["while you were away"])
    await wait_until(lambda: bob.current.presence.is_online("alice"))


@pytest.mark.asyncio
async def test_switching_user_replaces_session(backend, alice, bob, fast_settings):
    client, _ = _client(backend, alice, fast_settings)
    await client.on_auth_change(alice)
    first = client.current

    await client.on_auth_change(alice)
    assert client.current is first

    await client.on_auth_change(bob)
    assert client.current.session == bob
    assert client.connection.session == bob
    await client.stop()


@pytest.mark.asyncio
async def test_resync_catches_up_after_feed_gap(clients, backend):
    alice, bob, _ = clients
    hub, _ = backend
    a_view = await alice.open_conversation(CONVERSATION_ID)

    hub.hold()
    await bob.send(CONVERSATION_ID, "lost in the gap")
    hub.drop_held()
    assert a_view.messages() == []

    await alice.resync()

    assert _contents(a_view) == [("lost in the gap", MessageStatus.CONFIRMED)]
    assert alice.current.directory.get(CONVERSATION_ID).last_message_preview == "lost in the gap"


@pytest.mark.asyncio
async def test_reply_reaches_other_client_with_reference(clients):
    alice, bob, _ = clients
    b_view = await bob.open_conversation(CONVERSATION_ID)
    original = (await alice.send(CONVERSATION_ID, "lunch?")).message

    reply = (await bob.send(CONVERSATION_ID, "sure", replied_to=original.id)).message

    assert [m.replied_to for m in b_view.messages()] == [None, original.id]
    assert reply.replied_to == original.id
