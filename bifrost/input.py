"""Key dispatcher: (mode, key) -> state mutation and an optional outbound action.

Nothing in here performs I/O; every effect is visible on the state as soon
as `handle_key` returns.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .data_models import Mode
from .state import AppState

INTERRUPT_KEY = "ctrl+c"


@dataclass(frozen=True)
class KeyPress:
    """A key event in Textual's vocabulary.

    `key` is the key name ("j", "down", "enter", "ctrl+c", "slash"...),
    `character` is the printable glyph if the key produced one.
    """

    key: str
    character: Optional[str] = None

    @classmethod
    def from_event(cls, event) -> "KeyPress":
        return cls(key=event.key, character=getattr(event, "character", None))

    @property
    def printable(self) -> Optional[str]:
        if self.key.startswith("ctrl+"):
            return None
        if self.character and len(self.character) == 1 and self.character.isprintable():
            return self.character
        return None


@dataclass(frozen=True)
class SendText:
    """Outbound action: send `text` to the currently selected chat."""

    text: str


def handle_key(state: AppState, key: KeyPress) -> Optional[SendText]:
    if key.key == INTERRUPT_KEY:
        state.should_quit = True
        return None
    handler = _MODE_HANDLERS[state.mode]
    return handler(state, key)


# Normal mode: printable characters first, then named keys
_NORMAL_CHARS: Dict[str, Callable[[AppState], None]] = {
    "j": AppState.move_down,
    "k": AppState.move_up,
    "h": AppState.switch_panel,
    "l": AppState.switch_panel,
    "i": AppState.enter_insert,
    "/": AppState.enter_search,
    ":": AppState.enter_command,
    "@": AppState.enter_find,
    "A": AppState.enter_account_picker,
    "g": AppState.jump_top,
    "G": AppState.jump_bottom,
}

_NORMAL_KEYS: Dict[str, Callable[[AppState], None]] = {
    "down": AppState.move_down,
    "up": AppState.move_up,
    "left": AppState.switch_panel,
    "right": AppState.switch_panel,
    "tab": AppState.switch_panel,
}


def _handle_normal(state: AppState, key: KeyPress) -> Optional[SendText]:
    char = key.printable
    if char == "q":
        state.should_quit = True
    elif char == "r":
        state.reload_requested = True
    elif char == "D":
        state.disconnect_requested = True
    elif char in _NORMAL_CHARS:
        _NORMAL_CHARS[char](state)
    elif key.key in _NORMAL_KEYS:
        _NORMAL_KEYS[key.key](state)
    return None


def _handle_insert(state: AppState, key: KeyPress) -> Optional[SendText]:
    if key.key == "escape":
        state.exit_insert()
    elif key.key == "enter":
        text = state.submit_input()
        if text is not None:
            return SendText(text)
    elif key.key == "backspace":
        state.input_buffer = state.input_buffer[:-1]
    elif key.printable:
        state.input_buffer += key.printable
    return None


def _handle_search(state: AppState, key: KeyPress) -> Optional[SendText]:
    if key.key == "escape":
        state.exit_search()
    elif key.key == "enter":
        state.jump_to_selected_search_result()
    elif key.key in ("down", "ctrl+j", "ctrl+n"):
        state.search_move_down()
    elif key.key in ("up", "ctrl+k", "ctrl+p"):
        state.search_move_up()
    elif key.key == "backspace":
        state.search_backspace()
    elif key.printable:
        state.search_type(key.printable)
    return None


def _handle_account_picker(state: AppState, key: KeyPress) -> Optional[SendText]:
    if key.key == "escape":
        state.exit_account_picker()
    elif key.key == "enter":
        state.select_account()
    elif key.key == "down" or key.printable == "j":
        state.account_picker_move_down()
    elif key.key == "up" or key.printable == "k":
        state.account_picker_move_up()
    return None


def _handle_command(state: AppState, key: KeyPress) -> Optional[SendText]:
    if key.key == "escape":
        state.exit_command()
    elif key.key == "enter":
        state.execute_command()
    elif key.key == "backspace":
        state.command_backspace()
    elif key.printable:
        state.command_buffer += key.printable
    return None


def _handle_find_user(state: AppState, key: KeyPress) -> Optional[SendText]:
    if key.key == "escape":
        state.exit_find()
    elif key.key == "enter":
        state.confirm_find()
    elif key.key == "backspace":
        state.find_backspace()
    elif key.printable:
        state.find_type(key.printable)
    return None


_MODE_HANDLERS: Dict[Mode, Callable[[AppState, KeyPress], Optional[SendText]]] = {
    Mode.NORMAL: _handle_normal,
    Mode.INSERT: _handle_insert,
    Mode.SEARCH: _handle_search,
    Mode.ACCOUNT_PICKER: _handle_account_picker,
    Mode.COMMAND: _handle_command,
    Mode.FIND_USER: _handle_find_user,
}
