import asyncio
import threading

from bifrost.data_models import ChatRef, FindStatus, Message, Mode
from bifrost.orchestrator import ChatHandleCache, Orchestrator, ReadWriteLock, SessionContext
from bifrost.state import AppState

from conftest import FakeTransport, inbound, settle


def ref(chat_id, name):
    return ChatRef(chat_id=chat_id, name=name, handle=f"peer-{chat_id}")


async def connect(orch, state):
    """List dialogs and let the initial backfill land."""
    orch.start_dialog_listing()
    await settle(orch, state)
    await settle(orch, state)


# ==================== dialogs and backfill ====================

def test_dialog_listing_populates_store_and_handles():
    async def run():
        transport = FakeTransport(chats=[ref(1, "Alice"), ref(2, "Bob")])
        orch = Orchestrator(transport)
        state = AppState()

        await connect(orch, state)

        assert [c.name for c in state.chats] == ["Alice", "Bob"]
        assert orch.handles.get(2) == "peer-2"
        # the initially selected chat is fetched right away
        assert transport.fetch_calls == ["peer-1"]
        await orch.shutdown()

    asyncio.run(run())


def test_dialog_listing_failure_sets_status():
    async def run():
        transport = FakeTransport()
        transport.fail_list = RuntimeError("offline")
        orch = Orchestrator(transport)
        state = AppState.with_welcome()

        await connect(orch, state)

        assert state.status == "Could not load dialogs: offline"
        assert [c.name for c in state.chats] == ["Welcome"]
        await orch.shutdown()

    asyncio.run(run())


def test_backfill_is_applied_oldest_first():
    async def run():
        history = {
            "peer-1": [
                Message("Alice", "third", False),
                Message("You", "second", True),
                Message("Alice", "first", False),
            ]
        }
        transport = FakeTransport(chats=[ref(1, "Alice")], history=history)
        orch = Orchestrator(transport)
        state = AppState()

        await connect(orch, state)

        assert [m.text for m in state.current_messages()] == ["first", "second", "third"]
        assert state.pending_load_chat_id is None
        assert state.store.is_loaded(1)
        await orch.shutdown()

    asyncio.run(run())


def test_backfill_respects_limit():
    async def run():
        history = {"peer-1": [Message("Alice", str(i), False) for i in range(10, 0, -1)]}
        transport = FakeTransport(chats=[ref(1, "Alice")], history=history)
        orch = Orchestrator(transport, SessionContext(backfill_limit=3))
        state = AppState()

        await connect(orch, state)

        assert [m.text for m in state.current_messages()] == ["8", "9", "10"]
        await orch.shutdown()

    asyncio.run(run())


def test_backfill_failure_applies_empty_history():
    async def run():
        transport = FakeTransport(chats=[ref(1, "Alice")])
        transport.fail_fetch = RuntimeError("flood wait")
        orch = Orchestrator(transport)
        state = AppState()

        await connect(orch, state)

        assert state.current_messages() == []
        assert state.pending_load_chat_id is None
        await orch.shutdown()

    asyncio.run(run())


def test_stale_backfill_is_discarded():
    async def run():
        history = {
            "peer-1": [Message("Alice", "from alice", False)],
            "peer-2": [Message("Bob", "from bob", False)],
        }
        transport = FakeTransport(chats=[ref(1, "Alice"), ref(2, "Bob")], history=history)
        gate = transport.hold("peer-1")
        orch = Orchestrator(transport)
        state = AppState()

        await connect(orch, state)
        assert state.pending_load_chat_id == 1

        state.move_down()
        await settle(orch, state)
        await settle(orch, state)
        assert [m.text for m in state.current_messages()] == ["from bob"]

        gate.set()
        await settle(orch, state)

        assert state.store.messages_for(1) == []
        assert not state.store.is_loaded(1)
        await orch.shutdown()

    asyncio.run(run())


def test_start_backfill_for_pending_chat_is_noop():
    async def run():
        transport = FakeTransport(chats=[ref(1, "Alice")])
        transport.hold("peer-1")
        orch = Orchestrator(transport)
        state = AppState()

        await connect(orch, state)

        assert not orch.start_backfill(state, 1)
        await settle(orch, state)
        assert transport.fetch_calls == ["peer-1"]
        await orch.shutdown()

    asyncio.run(run())


def test_returning_to_loaded_chat_does_not_refetch():
    async def run():
        transport = FakeTransport(chats=[ref(1, "Alice"), ref(2, "Bob")])
        orch = Orchestrator(transport)
        state = AppState()

        await connect(orch, state)
        state.move_down()
        await settle(orch, state)
        await settle(orch, state)
        state.move_up()
        await settle(orch, state)

        assert transport.fetch_calls == ["peer-1", "peer-2"]
        await orch.shutdown()

    asyncio.run(run())


def test_reload_refetches_current_chat():
    async def run():
        history = {"peer-1": [Message("Alice", "old", False)]}
        transport = FakeTransport(chats=[ref(1, "Alice")], history=history)
        orch = Orchestrator(transport)
        state = AppState()

        await connect(orch, state)
        history["peer-1"] = [Message("Alice", "new", False), Message("Alice", "old", False)]
        state.reload_requested = True
        await settle(orch, state)
        await settle(orch, state)

        assert transport.fetch_calls == ["peer-1", "peer-1"]
        assert [m.text for m in state.current_messages()] == ["old", "new"]
        await orch.shutdown()

    asyncio.run(run())


def test_reload_without_handle_sets_status():
    async def run():
        orch = Orchestrator(FakeTransport())
        state = AppState.with_welcome()
        state.reload_requested = True

        await settle(orch, state)

        assert state.status == "Nothing to reload for this chat"
        assert not state.reload_requested
        await orch.shutdown()

    asyncio.run(run())


# ==================== live updates ====================

def test_live_update_appends_and_counts_unread():
    async def run():
        transport = FakeTransport(chats=[ref(1, "Alice"), ref(2, "Bob")])
        orch = Orchestrator(transport)
        state = AppState()
        await connect(orch, state)

        orch.start_updates()
        transport.push(inbound(2, "ping", chat_name="Bob"))
        transport.push(inbound(1, "hello", chat_name="Alice"))
        await settle(orch, state)

        bob = state.store.get_chat(2)
        assert [m.text for m in state.store.messages_for(2)] == ["ping"]
        assert bob.unread_count == 1
        assert bob.last_message_preview == "ping"
        # selected chat: read immediately
        assert state.store.get_chat(1).unread_count == 0
        await orch.shutdown()

    asyncio.run(run())


def test_live_update_for_unknown_chat_creates_it():
    async def run():
        transport = FakeTransport(chats=[ref(1, "Alice")])
        orch = Orchestrator(transport)
        state = AppState()
        await connect(orch, state)

        orch.start_updates()
        transport.push(inbound(99, "hi there", chat_name="Stranger"))
        await settle(orch, state)

        assert [c.name for c in state.chats] == ["Alice", "Stranger"]
        assert state.store.get_chat(99).unread_count == 1
        assert 99 in orch.handles
        await orch.shutdown()

    asyncio.run(run())


def test_outgoing_live_update_is_ignored():
    async def run():
        transport = FakeTransport(chats=[ref(1, "Alice")])
        orch = Orchestrator(transport)
        state = AppState()
        await connect(orch, state)

        orch.start_updates()
        transport.push(inbound(1, "sent elsewhere", outgoing=True))
        await settle(orch, state)

        assert state.current_messages() == []
        await orch.shutdown()

    asyncio.run(run())


def test_live_update_refreshes_search_filter():
    async def run():
        transport = FakeTransport(chats=[ref(1, "Alice")])
        orch = Orchestrator(transport)
        state = AppState()
        await connect(orch, state)

        state.enter_search()
        state.search_type("z")
        assert state.filtered_chat_indices == []

        orch.start_updates()
        transport.push(inbound(5, "yo", chat_name="Zed"))
        await settle(orch, state)

        assert state.mode is Mode.SEARCH
        assert state.filtered_chat_indices == [1]
        await orch.shutdown()

    asyncio.run(run())


def test_update_listener_restarts_after_error():
    async def run():
        transport = FakeTransport(chats=[ref(1, "Alice")])
        orch = Orchestrator(transport, SessionContext(retry_initial=0.0, retry_max=0.0))
        state = AppState()
        await connect(orch, state)

        orch.start_updates()
        transport.push(ConnectionError("dropped"))
        transport.push(inbound(1, "after reconnect"))
        await settle(orch, state)

        assert transport.subscriptions == 2
        assert [m.text for m in state.current_messages()] == ["after reconnect"]
        await orch.shutdown()

    asyncio.run(run())


def test_update_listener_stops_when_stream_ends():
    async def run():
        transport = FakeTransport()
        orch = Orchestrator(transport)
        state = AppState()

        orch.start_updates()
        orch.start_updates()
        transport.push(None)
        await settle(orch, state)

        assert transport.subscriptions == 1
        assert orch.active_tasks == 0
        await orch.shutdown()

    asyncio.run(run())


def test_live_update_during_backfill_is_overwritten():
    async def run():
        history = {"peer-1": [Message("Alice", "history", False)]}
        transport = FakeTransport(chats=[ref(1, "Alice")], history=history)
        gate = transport.hold("peer-1")
        orch = Orchestrator(transport)
        state = AppState()
        await connect(orch, state)

        orch.start_updates()
        transport.push(inbound(1, "live"))
        await settle(orch, state)
        assert [m.text for m in state.current_messages()] == ["live"]

        gate.set()
        await settle(orch, state)

        assert [m.text for m in state.current_messages()] == ["history"]
        await orch.shutdown()

    asyncio.run(run())


# ==================== find user ====================

def _start_find(state, query):
    state.enter_find()
    state.find_query = query
    state.request_lookup()


def test_lookup_found_then_open_chat():
    async def run():
        users = {"bob": ChatRef(5, "Bob", "peer-5")}
        history = {"peer-5": [Message("Bob", "yo", False)]}
        transport = FakeTransport(users=users, history=history)
        orch = Orchestrator(transport)
        state = AppState.with_welcome()

        _start_find(state, "bob")
        await settle(orch, state)
        await settle(orch, state)

        assert state.find_result.status is FindStatus.FOUND
        assert state.find_result.chat_id == 5
        assert orch.handles.get(5) == "peer-5"

        state.confirm_find()
        await settle(orch, state)
        await settle(orch, state)

        assert state.mode is Mode.NORMAL
        assert state.current_chat_id() == 5
        assert [m.text for m in state.current_messages()] == ["yo"]
        await orch.shutdown()

    asyncio.run(run())


def test_lookup_not_found():
    async def run():
        orch = Orchestrator(FakeTransport())
        state = AppState()

        _start_find(state, "ghost")
        await settle(orch, state)
        await settle(orch, state)

        assert state.find_result.status is FindStatus.NOT_FOUND
        await orch.shutdown()

    asyncio.run(run())


def test_lookup_error():
    async def run():
        transport = FakeTransport()
        transport.fail_lookup = RuntimeError("flood wait")
        orch = Orchestrator(transport)
        state = AppState()

        _start_find(state, "bob")
        await settle(orch, state)
        await settle(orch, state)

        assert state.find_result.status is FindStatus.ERROR
        assert state.find_result.error == "flood wait"
        await orch.shutdown()

    asyncio.run(run())


def test_lookup_for_edited_query_is_discarded():
    async def run():
        transport = FakeTransport(users={"bob": ChatRef(5, "Bob", "peer-5")})
        gate = asyncio.Event()
        transport.lookup_gates["bob"] = gate
        orch = Orchestrator(transport)
        state = AppState()

        _start_find(state, "bob")
        await settle(orch, state)
        state.find_type("x")

        gate.set()
        await settle(orch, state)

        assert state.find_query == "bobx"
        assert state.find_result is None
        await orch.shutdown()

    asyncio.run(run())


def test_new_lookup_cancels_previous():
    async def run():
        users = {"a": ChatRef(1, "A", "peer-1"), "b": ChatRef(2, "B", "peer-2")}
        transport = FakeTransport(users=users)
        transport.lookup_gates["a"] = asyncio.Event()
        orch = Orchestrator(transport)
        state = AppState()

        _start_find(state, "a")
        await settle(orch, state)
        _start_find(state, "b")
        await settle(orch, state)
        await settle(orch, state)

        assert state.find_result.chat_id == 2
        assert 1 not in orch.handles
        assert orch.active_tasks == 0
        await orch.shutdown()

    asyncio.run(run())


# ==================== sending ====================

def test_send_echoes_then_sends():
    async def run():
        transport = FakeTransport(chats=[ref(1, "Alice")])
        orch = Orchestrator(transport)
        state = AppState()
        await connect(orch, state)

        message = orch.send_current(state, "hi")
        assert message.outgoing
        assert message.sender_display_name == "You"
        assert state.current_messages()[-1] is message
        assert state.store.get_chat(1).unread_count == 0

        await settle(orch, state)
        assert transport.sent == [("peer-1", "hi")]
        assert not message.failed
        await orch.shutdown()

    asyncio.run(run())


def test_send_failure_marks_message():
    async def run():
        transport = FakeTransport(chats=[ref(1, "Alice")])
        transport.fail_send = RuntimeError("timeout")
        orch = Orchestrator(transport)
        state = AppState()
        await connect(orch, state)

        message = orch.send_current(state, "hi")
        await settle(orch, state)

        assert message.failed
        assert state.status == "Send failed: timeout"
        await orch.shutdown()

    asyncio.run(run())


def test_send_to_chat_without_handle_is_refused():
    async def run():
        transport = FakeTransport()
        orch = Orchestrator(transport)
        state = AppState.with_welcome()

        assert orch.send_current(state, "hi") is None
        await settle(orch, state)

        assert state.status == "This chat cannot receive messages"
        assert len(state.current_messages()) == 1
        assert transport.sent == []
        await orch.shutdown()

    asyncio.run(run())


def test_shutdown_cancels_pending_work():
    async def run():
        transport = FakeTransport(chats=[ref(1, "Alice")])
        transport.hold("peer-1")
        orch = Orchestrator(transport)
        state = AppState()
        await connect(orch, state)
        orch.start_updates()
        await settle(orch, state)

        assert orch.active_tasks == 2
        await orch.shutdown()
        assert orch.active_tasks == 0

    asyncio.run(run())


# ==================== handle cache ====================

def test_handle_cache_ignores_missing_handles():
    cache = ChatHandleCache()
    cache.put(1, None)
    cache.put(2, "peer-2")

    assert 1 not in cache
    assert cache.get(2) == "peer-2"
    assert len(cache) == 1


def test_read_write_lock_blocks_writer_while_reading():
    lock = ReadWriteLock()
    events = []

    def writer():
        with lock.write():
            events.append("write")

    with lock.read():
        with lock.read():
            thread = threading.Thread(target=writer)
            thread.start()
            thread.join(0.1)
            assert thread.is_alive()
            events.append("read")

    thread.join(2)
    assert events == ["read", "write"]
