"""Background work for the chat UI.

Dialog listing, per-chat backfill, the live update listener, user lookup and
outbound sends run as asyncio tasks. They never touch `AppState`; each task
pushes a result event into a single queue which the host loop drains once per
tick and merges through `Orchestrator.apply`. Events carry the identity they
were computed for (chat id, lookup query) so stale results can be dropped.
"""

import asyncio
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from .api_interface import OUTGOING_SENDER, TransportInterface
from .data_models import ChatRef, FindResult, InboundMessage, Message, Mode
from .state import AppState

logger = logging.getLogger("bifrost.orchestrator")

DIALOG_LIMIT = 100
BACKFILL_LIMIT = 50
UPDATE_RETRY_INITIAL = 1.0
UPDATE_RETRY_MAX = 30.0


# === result events ===
@dataclass
class DialogsLoaded:
    chats: List[ChatRef]


@dataclass
class BackfillLoaded:
    chat_id: int
    messages: List[Message]


@dataclass
class LiveMessage:
    message: InboundMessage


@dataclass
class LookupFinished:
    query: str
    result: FindResult


@dataclass
class SendFailed:
    chat_id: int
    message: Message
    error: str


@dataclass
class TaskFailed:
    task: str
    error: str


@dataclass
class SessionContext:
    """Per-session configuration handed to the orchestrator at construction."""

    account_id: str = ""
    accounts: List[Tuple[str, str]] = field(default_factory=list)
    dialog_limit: int = DIALOG_LIMIT
    backfill_limit: int = BACKFILL_LIMIT
    retry_initial: float = UPDATE_RETRY_INITIAL
    retry_max: float = UPDATE_RETRY_MAX


class ReadWriteLock:
    """Many concurrent readers or one writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False

    @contextmanager
    def read(self):
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            while self._writing or self._readers:
                self._cond.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


class ChatHandleCache:
    """chat id -> sendable transport handle.

    Written when a chat is discovered, read whenever a task needs a target.
    The lock is only ever held for the dict operation itself.
    """

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._handles: Dict[int, Any] = {}

    def get(self, chat_id: int) -> Any:
        with self._lock.read():
            return self._handles.get(chat_id)

    def __contains__(self, chat_id: int) -> bool:
        with self._lock.read():
            return chat_id in self._handles

    def put(self, chat_id: int, handle: Any) -> None:
        if handle is None:
            return
        with self._lock.write():
            self._handles[chat_id] = handle

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._handles)


class Orchestrator:
    def __init__(self, transport: TransportInterface, context: Optional[SessionContext] = None):
        self.transport = transport
        self.context = context or SessionContext()
        self.handles = ChatHandleCache()
        self.results: "asyncio.Queue[Any]" = asyncio.Queue()
        self._tasks: Set[asyncio.Task] = set()
        self._lookup_task: Optional[asyncio.Task] = None
        self._updates_task: Optional[asyncio.Task] = None

    # ==================== task bookkeeping ====================

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def active_tasks(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    async def shutdown(self) -> None:
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug("Orchestrator shut down (%d tasks cancelled)", len(tasks))

    # ==================== start operations ====================

    def start_dialog_listing(self) -> None:
        self._spawn(self._list_dialogs(), "dialogs")

    def start_backfill(self, state: AppState, chat_id: int) -> bool:
        """Fetch history for `chat_id` unless that chat is already pending.

        Sets `state.pending_load_chat_id`, which supersedes any other pending
        chat: its result will be discarded when it arrives.
        """
        if state.pending_load_chat_id == chat_id:
            return False
        handle = self.handles.get(chat_id)
        if handle is None:
            logger.debug("No handle for chat %s; nothing to backfill", chat_id)
            return False
        state.pending_load_chat_id = chat_id
        self._spawn(self._backfill(chat_id, handle), f"backfill-{chat_id}")
        return True

    def start_updates(self) -> None:
        if self._updates_task is not None and not self._updates_task.done():
            return
        self._updates_task = self._spawn(self._listen_updates(), "updates")

    def start_lookup(self, query: str) -> None:
        """Start resolving `query`, superseding any lookup still running."""
        if self._lookup_task is not None and not self._lookup_task.done():
            self._lookup_task.cancel()
        self._lookup_task = self._spawn(self._lookup(query), f"lookup-{query}")

    def send(self, chat_id: int, message: Message) -> bool:
        """Send an already echoed outgoing message in the background."""
        handle = self.handles.get(chat_id)
        if handle is None:
            return False
        self._spawn(self._send(chat_id, handle, message), f"send-{chat_id}")
        return True

    # ==================== background bodies ====================

    async def _list_dialogs(self) -> None:
        try:
            chats = await self.transport.list_chats(self.context.dialog_limit)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Dialog listing failed")
            await self.results.put(TaskFailed("dialogs", str(e)))
            return
        chats = chats[: self.context.dialog_limit]
        for ref in chats:
            self.handles.put(ref.chat_id, ref.handle)
        await self.results.put(DialogsLoaded(chats))

    async def _backfill(self, chat_id: int, handle: Any) -> None:
        try:
            newest_first = await self.transport.fetch_messages(handle, self.context.backfill_limit)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Backfill for chat %s failed; applying empty result", chat_id)
            newest_first = []
        messages = list(reversed(newest_first[: self.context.backfill_limit]))
        await self.results.put(BackfillLoaded(chat_id, messages))

    async def _listen_updates(self) -> None:
        delay = self.context.retry_initial
        while True:
            try:
                async for update in self.transport.subscribe_updates():
                    self.handles.put(update.chat_id, update.handle)
                    await self.results.put(LiveMessage(update))
                    delay = self.context.retry_initial
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Update stream failed (%s); retrying in %.1fs", e, delay)
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.context.retry_max)
                continue
            logger.info("Update stream ended")
            return

    async def _lookup(self, query: str) -> None:
        try:
            ref = await self.transport.resolve_identifier(query)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Lookup for %r failed: %s", query, e)
            result = FindResult.failed(str(e) or e.__class__.__name__)
        else:
            if ref is None:
                result = FindResult.not_found()
            else:
                self.handles.put(ref.chat_id, ref.handle)
                result = FindResult.found(ref.chat_id, ref.name)
        await self.results.put(LookupFinished(query, result))

    async def _send(self, chat_id: int, handle: Any, message: Message) -> None:
        try:
            ok = await self.transport.send_text(handle, message.text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Send to chat %s failed", chat_id)
            await self.results.put(SendFailed(chat_id, message, str(e) or e.__class__.__name__))
            return
        if not ok:
            await self.results.put(SendFailed(chat_id, message, "rejected"))

    # ==================== host-loop side ====================

    def drain(self) -> List[Any]:
        """Everything queued so far, in arrival order. Never waits."""
        drained = []
        while True:
            try:
                drained.append(self.results.get_nowait())
            except asyncio.QueueEmpty:
                break
        return drained

    def apply(self, state: AppState, results: List[Any]) -> bool:
        """Merge drained results into the state. Returns True if anything changed."""
        changed = False
        for result in results:
            if isinstance(result, DialogsLoaded):
                for ref in result.chats:
                    state.store.upsert_chat(ref.chat_id, ref.name)
                state.clamp_selection()
                if state.mode is Mode.SEARCH:
                    state.update_search_filter()
                changed = True

            elif isinstance(result, BackfillLoaded):
                if state.pending_load_chat_id != result.chat_id:
                    logger.debug("Discarding stale backfill for chat %s", result.chat_id)
                    continue
                state.pending_load_chat_id = None
                state.store.replace_messages(result.chat_id, result.messages)
                changed = True

            elif isinstance(result, LiveMessage):
                msg = result.message
                if msg.outgoing:
                    # our own sends are echoed locally already
                    continue
                state.store.upsert_chat(msg.chat_id, msg.chat_name)
                state.store.append_message(msg.chat_id, msg.sender_name, msg.text, False)
                if state.current_chat_id() == msg.chat_id:
                    state.store.clear_unread(msg.chat_id)
                if state.mode is Mode.SEARCH:
                    state.update_search_filter()
                changed = True

            elif isinstance(result, LookupFinished):
                if state.apply_lookup_result(result.query, result.result):
                    changed = True
                else:
                    logger.debug("Discarding stale lookup for %r", result.query)

            elif isinstance(result, SendFailed):
                state.store.mark_failed(result.chat_id, result.message)
                state.status = f"Send failed: {result.error}"
                changed = True

            elif isinstance(result, TaskFailed):
                state.status = f"Could not load {result.task}: {result.error}"
                changed = True
        return changed

    def process_requests(self, state: AppState) -> None:
        """Turn request flags left by the dispatcher into background work."""
        if state.reload_requested:
            state.reload_requested = False
            chat_id = state.current_chat_id()
            if chat_id is not None and not self.start_backfill(state, chat_id):
                if chat_id not in self.handles:
                    state.status = "Nothing to reload for this chat"

        if state.needs_message_load:
            state.needs_message_load = False
            chat_id = state.current_chat_id()
            if chat_id is not None and not state.store.is_loaded(chat_id):
                self.start_backfill(state, chat_id)

        if state.lookup_requested is not None:
            query = state.lookup_requested
            state.lookup_requested = None
            self.start_lookup(query)

    def tick(self, state: AppState) -> bool:
        """One host-loop iteration: drain, merge, then act on request flags."""
        changed = self.apply(state, self.drain())
        self.process_requests(state)
        return changed

    def send_current(self, state: AppState, text: str) -> Optional[Message]:
        """Echo `text` into the selected chat and send it in the background."""
        chat_id = state.current_chat_id()
        if chat_id is None:
            return None
        if chat_id not in self.handles:
            state.status = "This chat cannot receive messages"
            return None
        message = state.store.append_message(chat_id, OUTGOING_SENDER, text, True)
        self.send(chat_id, message)
        return message
