import asyncio
import logging
from pathlib import Path
from typing import AsyncIterator, List, Optional

from telethon import TelegramClient, events, utils
from telethon.errors import UsernameInvalidError, UsernameNotOccupiedError

from .data_models import ChatRef, InboundMessage, Message

OUTGOING_SENDER = "You"
MEDIA_PLACEHOLDER = "[media]"

logger = logging.getLogger("bifrost.api")

# Telethon is chatty at INFO; keep it quiet unless something breaks
logging.getLogger("telethon").setLevel(logging.WARNING)


class TransportInterface:
    """What the core needs from the messaging network.

    Every call may suspend. `handle` values are opaque to the core: they come
    out of `list_chats`/`resolve_identifier`/live updates and are only ever
    handed back to the transport.
    """

    async def list_chats(self, max_count: int) -> List[ChatRef]: ...
    async def fetch_messages(self, handle, max_count: int) -> List[Message]: ...
    def subscribe_updates(self) -> AsyncIterator[InboundMessage]: ...
    async def send_text(self, handle, text: str) -> bool: ...
    async def resolve_identifier(self, text: str) -> Optional[ChatRef]: ...


class TelethonTransport(TransportInterface):
    """Telegram transport backed by a Telethon client and a session file."""

    def __init__(self, session_path: Path, api_id: int, api_hash: str):
        self.session_path = Path(session_path)
        self.session_path.parent.mkdir(parents=True, exist_ok=True)
        # Telethon appends ".session" itself
        session_name = str(self.session_path.with_suffix(""))
        self.client = TelegramClient(session_name, api_id, api_hash)

    # --- session lifecycle (used outside the core) ---
    async def connect(self) -> None:
        logger.info("Connecting session %s", self.session_path)
        await self.client.connect()

    async def disconnect(self) -> None:
        try:
            await self.client.disconnect()
        except Exception:
            logger.exception("Disconnect failed (non-fatal)")

    async def is_authorized(self) -> bool:
        return await self.client.is_user_authorized()

    async def get_me_name(self) -> str:
        me = await self.client.get_me()
        if me is None:
            return "unknown"
        return me.username or utils.get_display_name(me) or "unknown"

    # --- core transport ---
    async def list_chats(self, max_count: int) -> List[ChatRef]:
        chats: List[ChatRef] = []
        async for dialog in self.client.iter_dialogs(limit=max_count):
            chats.append(
                ChatRef(chat_id=dialog.id, name=dialog.name or str(dialog.id), handle=dialog.input_entity)
            )
        logger.debug("list_chats: %d dialogs", len(chats))
        return chats

    async def fetch_messages(self, handle, max_count: int) -> List[Message]:
        """Most recent first, as the server returns them."""
        messages: List[Message] = []
        async for msg in self.client.iter_messages(handle, limit=max_count):
            chat_name = utils.get_display_name(await msg.get_chat()) or ""
            messages.append(
                Message(
                    sender_display_name=await self._sender_name(msg, chat_name),
                    text=self._text_of(msg),
                    outgoing=bool(msg.out),
                )
            )
        return messages

    async def subscribe_updates(self) -> AsyncIterator[InboundMessage]:
        """Yield incoming messages until the client disconnects."""
        queue: "asyncio.Queue[InboundMessage]" = asyncio.Queue()

        async def _on_new_message(event) -> None:
            try:
                queue.put_nowait(await self._to_inbound(event))
            except Exception:
                logger.exception("Dropping update that could not be converted")

        self.client.add_event_handler(_on_new_message, events.NewMessage(incoming=True))
        getter = None
        try:
            while self.client.is_connected():
                getter = asyncio.ensure_future(queue.get())
                disconnected = self.client.disconnected
                done, _ = await asyncio.wait(
                    {getter, disconnected}, return_when=asyncio.FIRST_COMPLETED
                )
                if getter in done:
                    yield getter.result()
                else:
                    getter.cancel()
                    logger.info("Update stream closed: client disconnected")
                    return
        finally:
            if getter is not None and not getter.done():
                getter.cancel()
            self.client.remove_event_handler(_on_new_message)

    async def send_text(self, handle, text: str) -> bool:
        await self.client.send_message(handle, text)
        return True

    async def resolve_identifier(self, text: str) -> Optional[ChatRef]:
        """Resolve a username, phone number or t.me link to a chat.

        Returns None when nothing matches; other failures propagate.
        """
        identifier = text.strip()
        try:
            entity = await self.client.get_entity(identifier)
        except (ValueError, UsernameNotOccupiedError, UsernameInvalidError):
            logger.debug("resolve_identifier: no match for %r", identifier)
            return None
        return ChatRef(
            chat_id=utils.get_peer_id(entity),
            name=utils.get_display_name(entity) or identifier,
            handle=utils.get_input_peer(entity),
        )

    # --- conversion helpers ---
    async def _to_inbound(self, event) -> InboundMessage:
        chat = await event.get_chat()
        chat_name = utils.get_display_name(chat) if chat is not None else ""
        chat_name = chat_name or str(event.chat_id)
        return InboundMessage(
            chat_id=event.chat_id,
            chat_name=chat_name,
            sender_name=await self._sender_name(event.message, chat_name),
            text=self._text_of(event.message),
            outgoing=bool(event.out),
            handle=await event.get_input_chat(),
        )

    @staticmethod
    async def _sender_name(msg, fallback: str) -> str:
        # private chats often carry no sender; fall back to the chat name
        if msg.out:
            return OUTGOING_SENDER
        sender = await msg.get_sender()
        name = utils.get_display_name(sender) if sender is not None else ""
        return name or fallback

    @staticmethod
    def _text_of(msg) -> str:
        if msg.message:
            return msg.message
        return MEDIA_PLACEHOLDER if msg.media else ""
