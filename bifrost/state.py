"""Interaction state machine: mode, focus, cursors, buffers and request flags."""

import logging
from typing import List, Optional, Tuple

from .data_models import Chat, FindResult, FindStatus, Message, Mode, Panel
from .store import ConversationStore

logger = logging.getLogger("bifrost.state")

WELCOME_CHAT_ID = 1
WELCOME_TEXT = (
    "Welcome to Bifrost! Use hjkl to navigate, i to type, Enter to send, "
    "/ to search, @ to find a user, : for commands."
)


class AppState:
    """Everything the key dispatcher mutates, plus the conversation store.

    The host loop owns the only instance. Background tasks never touch it;
    their results are merged by the orchestrator from the host loop.
    """

    def __init__(self, store: Optional[ConversationStore] = None) -> None:
        self.store = store if store is not None else ConversationStore()

        self.mode = Mode.NORMAL
        self.panel = Panel.FRIENDS
        self.selected_chat = 0
        self.scroll_offset = 0
        self.input_buffer = ""
        self.status = ""

        # search
        self.search_query = ""
        self.filtered_chat_indices: List[int] = []
        self.search_selected = 0

        # accounts
        self.current_account_id = ""
        self.accounts: List[Tuple[str, str]] = []
        self.account_picker_selected = 0

        # command line
        self.command_buffer = ""

        # find user
        self.find_query = ""
        self.find_result: Optional[FindResult] = None

        # requests picked up by the host loop
        self.should_quit = False
        self.reload_requested = False
        self.disconnect_requested = False
        self.switch_account_requested: Optional[str] = None
        self.add_account_requested = False
        self.needs_message_load = True
        self.pending_load_chat_id: Optional[int] = None
        self.lookup_requested: Optional[str] = None

    @classmethod
    def with_welcome(cls) -> "AppState":
        """Fresh state holding the local welcome chat."""
        state = cls()
        state.store.upsert_chat(WELCOME_CHAT_ID, "Welcome")
        state.store.append_message(WELCOME_CHAT_ID, "Bifrost", WELCOME_TEXT, False)
        state.store.mark_loaded(WELCOME_CHAT_ID)
        state.store.clear_unread(WELCOME_CHAT_ID)
        return state

    @property
    def chats(self) -> List[Chat]:
        return self.store.chats

    @property
    def exit_requested(self) -> bool:
        return bool(
            self.should_quit
            or self.disconnect_requested
            or self.switch_account_requested
            or self.add_account_requested
        )

    # ==================== Selection ====================

    def current_chat_id(self) -> Optional[int]:
        chat = self.current_chat()
        return chat.id if chat is not None else None

    def current_chat(self) -> Optional[Chat]:
        if 0 <= self.selected_chat < len(self.chats):
            return self.chats[self.selected_chat]
        return None

    def current_messages(self) -> List[Message]:
        chat_id = self.current_chat_id()
        if chat_id is None:
            return []
        return self.store.messages_for(chat_id)

    def clear_current_unread(self) -> None:
        chat_id = self.current_chat_id()
        if chat_id is not None:
            self.store.clear_unread(chat_id)

    def select_chat(self, index: int) -> None:
        """Select a chat by index (clamped) and trigger the lazy load."""
        if not self.chats:
            self.selected_chat = 0
            return
        self.selected_chat = max(0, min(index, len(self.chats) - 1))
        self.scroll_offset = 0
        self.needs_message_load = True
        self.clear_current_unread()

    def clamp_selection(self) -> None:
        if not self.chats:
            self.selected_chat = 0
        elif self.selected_chat >= len(self.chats):
            self.selected_chat = len(self.chats) - 1

    def move_up(self) -> None:
        if self.panel is Panel.FRIENDS:
            if self.selected_chat > 0:
                self.select_chat(self.selected_chat - 1)
        else:
            # back in history
            self.scroll_offset += 1

    def move_down(self) -> None:
        if self.panel is Panel.FRIENDS:
            if self.selected_chat < len(self.chats) - 1:
                self.select_chat(self.selected_chat + 1)
        else:
            self.scroll_offset = max(0, self.scroll_offset - 1)

    def jump_top(self) -> None:
        if self.chats and self.selected_chat != 0:
            self.select_chat(0)

    def jump_bottom(self) -> None:
        last = len(self.chats) - 1
        if last >= 0 and self.selected_chat != last:
            self.select_chat(last)

    def switch_panel(self) -> None:
        if self.panel is Panel.FRIENDS:
            self.panel = Panel.CONVERSATION
        else:
            self.panel = Panel.FRIENDS

    # ==================== Insert ====================

    def enter_insert(self) -> None:
        self.mode = Mode.INSERT

    def exit_insert(self) -> None:
        self.input_buffer = ""
        self.mode = Mode.NORMAL

    def submit_input(self) -> Optional[str]:
        """Take the input buffer for sending. Empty input changes nothing."""
        if not self.input_buffer:
            return None
        text = self.input_buffer
        self.input_buffer = ""
        self.mode = Mode.NORMAL
        return text

    # ==================== Search ====================

    def enter_search(self) -> None:
        self.mode = Mode.SEARCH
        self.search_query = ""
        self.search_selected = 0
        self.update_search_filter()

    def exit_search(self) -> None:
        self.mode = Mode.NORMAL
        self.search_query = ""
        self.filtered_chat_indices = []
        self.search_selected = 0

    def update_search_filter(self) -> None:
        query = self.search_query.lower()
        self.filtered_chat_indices = [
            i for i, chat in enumerate(self.chats) if query in chat.name.lower()
        ]
        if self.search_selected >= len(self.filtered_chat_indices):
            self.search_selected = 0

    def search_type(self, char: str) -> None:
        self.search_query += char
        self.update_search_filter()

    def search_backspace(self) -> None:
        self.search_query = self.search_query[:-1]
        self.update_search_filter()

    def search_move_up(self) -> None:
        if self.search_selected > 0:
            self.search_selected -= 1

    def search_move_down(self) -> None:
        if self.search_selected < len(self.filtered_chat_indices) - 1:
            self.search_selected += 1

    def jump_to_selected_search_result(self) -> None:
        if 0 <= self.search_selected < len(self.filtered_chat_indices):
            self.select_chat(self.filtered_chat_indices[self.search_selected])
        self.exit_search()

    # ==================== Account picker ====================

    def set_account_info(self, account_id: str, accounts: List[Tuple[str, str]]) -> None:
        self.current_account_id = account_id
        self.accounts = list(accounts)

    def enter_account_picker(self) -> None:
        self.mode = Mode.ACCOUNT_PICKER
        self.account_picker_selected = 0
        for i, (account_id, _label) in enumerate(self.accounts):
            if account_id == self.current_account_id:
                self.account_picker_selected = i
                break

    def exit_account_picker(self) -> None:
        self.mode = Mode.NORMAL

    def account_picker_move_up(self) -> None:
        if self.account_picker_selected > 0:
            self.account_picker_selected -= 1

    def account_picker_move_down(self) -> None:
        # the extra last row is "+ Add account"
        if self.account_picker_selected < len(self.accounts):
            self.account_picker_selected += 1

    def select_account(self) -> None:
        if self.account_picker_selected < len(self.accounts):
            account_id, _label = self.accounts[self.account_picker_selected]
            if account_id != self.current_account_id:
                self.switch_account_requested = account_id
        else:
            self.add_account_requested = True
        self.exit_account_picker()

    # ==================== Command line ====================

    def enter_command(self) -> None:
        self.mode = Mode.COMMAND
        self.command_buffer = ""

    def exit_command(self) -> None:
        self.mode = Mode.NORMAL
        self.command_buffer = ""

    def command_backspace(self) -> None:
        if not self.command_buffer:
            self.exit_command()
        else:
            self.command_buffer = self.command_buffer[:-1]

    def execute_command(self) -> None:
        raw = self.command_buffer.strip()
        self.exit_command()
        if not raw:
            return

        name, _, arg = raw.partition(" ")
        arg = arg.strip()
        logger.debug("Executing command %r", raw)

        if name in ("q", "quit"):
            self.should_quit = True
        elif name in ("r", "reload"):
            self.reload_requested = True
        elif name in ("a", "accounts"):
            self.enter_account_picker()
        elif name == "disconnect":
            self.disconnect_requested = True
        elif name in ("s", "search"):
            self.enter_search()
        elif name in ("f", "find"):
            self.enter_find()
            if arg:
                self.find_query = arg
                self.request_lookup()
        else:
            self.status = f"Unknown command: {raw}"

    # ==================== Find user ====================

    def enter_find(self) -> None:
        self.mode = Mode.FIND_USER
        self.find_query = ""
        self.find_result = None

    def exit_find(self) -> None:
        self.mode = Mode.NORMAL
        self.find_query = ""
        self.find_result = None

    def find_type(self, char: str) -> None:
        self.find_query += char
        self.find_result = None

    def find_backspace(self) -> None:
        self.find_query = self.find_query[:-1]
        self.find_result = None

    def request_lookup(self) -> None:
        query = self.find_query.strip()
        if not query:
            return
        self.find_query = query
        self.find_result = FindResult.searching()
        self.lookup_requested = query

    def confirm_find(self) -> None:
        result = self.find_result
        if result is None:
            if self.find_query.strip():
                self.request_lookup()
            else:
                self.exit_find()
        elif result.status is FindStatus.FOUND:
            self.jump_to_found_user()
        elif result.status is not FindStatus.SEARCHING:
            self.exit_find()

    def apply_lookup_result(self, query: str, result: FindResult) -> bool:
        """Record a lookup result if it still answers the visible query."""
        if self.mode is not Mode.FIND_USER or self.find_query != query:
            return False
        self.find_result = result
        return True

    def jump_to_found_user(self) -> None:
        result = self.find_result
        if result is None or result.status is not FindStatus.FOUND:
            return
        self.store.upsert_chat(result.chat_id, result.name)
        index = self.store.index_of(result.chat_id)
        self.exit_find()
        if index is not None:
            self.select_chat(index)
