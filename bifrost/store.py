"""In-memory conversation store: chats, per-chat message lists and unread counts."""

import logging
from typing import Dict, Iterable, Iterator, List, Optional, Set

from .data_models import Chat, Message

logger = logging.getLogger("bifrost.store")


class ConversationStore:
    """Chats in first-seen order plus an oldest-first message list per chat id.

    Nothing here is persisted; the store lives for one session.
    """

    def __init__(self) -> None:
        self.chats: List[Chat] = []
        self._by_id: Dict[int, Chat] = {}
        self._messages: Dict[int, List[Message]] = {}
        self._loaded: Set[int] = set()

    def __len__(self) -> int:
        return len(self.chats)

    def __iter__(self) -> Iterator[Chat]:
        return iter(self.chats)

    def __contains__(self, chat_id: int) -> bool:
        return chat_id in self._by_id

    def get_chat(self, chat_id: int) -> Optional[Chat]:
        return self._by_id.get(chat_id)

    def index_of(self, chat_id: int) -> Optional[int]:
        for i, chat in enumerate(self.chats):
            if chat.id == chat_id:
                return i
        return None

    def upsert_chat(self, chat_id: int, name: str) -> Chat:
        """Insert the chat if unknown. An existing chat keeps its name."""
        chat = self._by_id.get(chat_id)
        if chat is None:
            chat = Chat(id=chat_id, name=name)
            self.chats.append(chat)
            self._by_id[chat_id] = chat
            logger.debug("New chat %s (%s)", chat_id, name)
        return chat

    def append_message(
        self, chat_id: int, sender: str, text: str, outgoing: bool
    ) -> Message:
        message = Message(sender_display_name=sender, text=text, outgoing=outgoing)
        self._messages.setdefault(chat_id, []).append(message)

        chat = self._by_id.get(chat_id)
        if chat is not None:
            chat.last_message_preview = text
            if not outgoing:
                chat.unread_count += 1
        return message

    def clear_unread(self, chat_id: int) -> None:
        chat = self._by_id.get(chat_id)
        if chat is not None:
            chat.unread_count = 0

    def replace_messages(self, chat_id: int, messages: Iterable[Message]) -> None:
        """Overwrite the chat's history wholesale with a backfill result.

        Anything appended since the backfill was requested is lost.
        """
        new_messages = list(messages)
        self._messages[chat_id] = new_messages
        self._loaded.add(chat_id)

        chat = self._by_id.get(chat_id)
        if chat is not None and new_messages:
            chat.last_message_preview = new_messages[-1].text

    def messages_for(self, chat_id: int) -> List[Message]:
        return list(self._messages.get(chat_id, []))

    def is_loaded(self, chat_id: int) -> bool:
        return chat_id in self._loaded

    def mark_loaded(self, chat_id: int) -> None:
        self._loaded.add(chat_id)

    def mark_failed(self, chat_id: int, message: Message) -> bool:
        """Annotate an optimistically echoed message whose send failed.

        Returns False when the message is no longer in the chat (a backfill
        replaced the history in the meantime).
        """
        for existing in self._messages.get(chat_id, []):
            if existing is message:
                existing.failed = True
                return True
        return False

    def total_unread(self) -> int:
        return sum(chat.unread_count for chat in self.chats)
