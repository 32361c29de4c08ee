import asyncio
from typing import Dict, List, Optional

import pytest

from bifrost.api_interface import TransportInterface
from bifrost.data_models import ChatRef, InboundMessage, Message


class FakeTransport(TransportInterface):
    """In-memory transport. Handles are plain strings like "peer-42"."""

    def __init__(
        self,
        chats: Optional[List[ChatRef]] = None,
        history: Optional[Dict[str, List[Message]]] = None,
        users: Optional[Dict[str, ChatRef]] = None,
    ):
        self.chats = chats or []
        # newest first, like the real server
        self.history = history or {}
        self.users = users or {}
        self.sent = []
        self.fetch_calls = []
        self.gates: Dict[str, asyncio.Event] = {}
        self.lookup_gates: Dict[str, asyncio.Event] = {}
        self.fail_send: Optional[Exception] = None
        self.fail_list: Optional[Exception] = None
        self.fail_fetch: Optional[Exception] = None
        self.fail_lookup: Optional[Exception] = None
        self.subscriptions = 0
        self._updates: Optional[asyncio.Queue] = None

    @property
    def updates(self) -> asyncio.Queue:
        if self._updates is None:
            self._updates = asyncio.Queue()
        return self._updates

    def push(self, item) -> None:
        """Queue an InboundMessage, an Exception to raise, or None to end the stream."""
        self.updates.put_nowait(item)

    def hold(self, handle: str) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates[handle] = gate
        return gate

    async def list_chats(self, max_count: int) -> List[ChatRef]:
        if self.fail_list:
            raise self.fail_list
        return list(self.chats)

    async def fetch_messages(self, handle, max_count: int) -> List[Message]:
        self.fetch_calls.append(handle)
        gate = self.gates.get(handle)
        if gate is not None:
            await gate.wait()
        if self.fail_fetch:
            raise self.fail_fetch
        return list(self.history.get(handle, []))[:max_count]

    async def subscribe_updates(self):
        self.subscriptions += 1
        while True:
            item = await self.updates.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def send_text(self, handle, text: str) -> bool:
        if self.fail_send:
            raise self.fail_send
        self.sent.append((handle, text))
        return True

    async def resolve_identifier(self, text: str) -> Optional[ChatRef]:
        gate = self.lookup_gates.get(text)
        if gate is not None:
            await gate.wait()
        if self.fail_lookup:
            raise self.fail_lookup
        return self.users.get(text)


def inbound(chat_id: int, text: str, chat_name: str = "", sender: str = "", outgoing: bool = False) -> InboundMessage:
    name = chat_name or f"Chat {chat_id}"
    return InboundMessage(
        chat_id=chat_id,
        chat_name=name,
        sender_name=sender or name,
        text=text,
        outgoing=outgoing,
        handle=f"peer-{chat_id}",
    )


async def settle(orchestrator, state, rounds: int = 10) -> None:
    """Let background tasks run, then merge whatever they produced."""
    for _ in range(rounds):
        await asyncio.sleep(0)
    orchestrator.tick(state)


@pytest.fixture
def bifrost_home(tmp_path, monkeypatch):
    monkeypatch.setenv("BIFROST_HOME", str(tmp_path))
    return tmp_path
