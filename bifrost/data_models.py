from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class Mode(Enum):
    """Vim-style interaction mode governing how keys are interpreted."""

    NORMAL = "normal"
    INSERT = "insert"
    SEARCH = "search"
    ACCOUNT_PICKER = "account_picker"
    COMMAND = "command"
    FIND_USER = "find_user"


class Panel(Enum):
    FRIENDS = "friends"
    CONVERSATION = "conversation"


class FindStatus(Enum):
    SEARCHING = "searching"
    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass
class Chat:
    id: int
    name: str
    last_message_preview: Optional[str] = None
    unread_count: int = 0


@dataclass(eq=False)
class Message:
    # eq=False: two messages with the same text are still distinct entries
    sender_display_name: str
    text: str
    outgoing: bool
    failed: bool = False


@dataclass
class ChatRef:
    """A chat as reported by the transport, with its sendable handle."""

    chat_id: int
    name: str
    handle: Any = None


@dataclass
class InboundMessage:
    """A single live-update message event."""

    chat_id: int
    chat_name: str
    sender_name: str
    text: str
    outgoing: bool = False
    handle: Any = None


@dataclass
class FindResult:
    status: FindStatus
    chat_id: Optional[int] = None
    name: str = ""
    error: str = ""

    @classmethod
    def searching(cls) -> "FindResult":
        return cls(FindStatus.SEARCHING)

    @classmethod
    def found(cls, chat_id: int, name: str) -> "FindResult":
        return cls(FindStatus.FOUND, chat_id=chat_id, name=name)

    @classmethod
    def not_found(cls) -> "FindResult":
        return cls(FindStatus.NOT_FOUND)

    @classmethod
    def failed(cls, error: str) -> "FindResult":
        return cls(FindStatus.ERROR, error=error)
