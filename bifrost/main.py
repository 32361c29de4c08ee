import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import dotenv
from rich.console import Console
from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal
from textual.widgets import Static

from .accounts import AccountRegistry, get_config_dir
from .api_interface import TelethonTransport
from .auth import authenticate, prompt_account_name
from .auth_storage import get_api_credentials
from .data_models import FindStatus, Mode, Panel
from .errors import BifrostError, SessionError
from .input import INTERRUPT_KEY, KeyPress, handle_key
from .orchestrator import Orchestrator, SessionContext
from .state import AppState

TICK_INTERVAL = 0.05

ACCENT = "#4682b4"
DIM = "#50505a"

logger = logging.getLogger("bifrost.main")


def configure_logging() -> None:
    """Attach the file-backed debug log when BIFROST_DEBUG is set.

    Textual owns stdout/stderr while running, so the file is the only
    useful sink.
    """
    root = logging.getLogger("bifrost")
    if not os.getenv("BIFROST_DEBUG"):
        root.setLevel(logging.WARNING)
        return
    logfile = get_config_dir() / "bifrost.log"
    for handler in root.handlers:
        if getattr(handler, "baseFilename", "") == str(logfile):
            return
    try:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        root.addHandler(fh)
        root.setLevel(logging.DEBUG)
    except OSError:
        root.setLevel(logging.WARNING)


class ExitReason(Enum):
    QUIT = "quit"
    DISCONNECT = "disconnect"
    SWITCH = "switch"
    ADD = "add"


@dataclass
class SessionOutcome:
    reason: ExitReason
    account_id: Optional[str] = None


def outcome_for(state: AppState) -> SessionOutcome:
    if state.switch_account_requested:
        return SessionOutcome(ExitReason.SWITCH, state.switch_account_requested)
    if state.add_account_requested:
        return SessionOutcome(ExitReason.ADD)
    if state.disconnect_requested:
        return SessionOutcome(ExitReason.DISCONNECT)
    return SessionOutcome(ExitReason.QUIT)


# ───────── rendering (reads state, never mutates it) ─────────
def render_friends(state: AppState) -> Text:
    focused = state.panel is Panel.FRIENDS
    text = Text()
    for i, chat in enumerate(state.chats):
        selected = i == state.selected_chat
        prefix = "> " if selected and focused else "  "
        style = f"bold {ACCENT}" if selected else "#b4b4b4"
        text.append(prefix + chat.name, style=style)
        if chat.unread_count:
            text.append(f" ({chat.unread_count})", style="bold yellow")
        if state.pending_load_chat_id == chat.id:
            text.append(" ⟳", style=DIM)
        text.append("\n")
    return text


def render_messages(state: AppState, height: int = 20) -> Text:
    chat = state.current_chat()
    if chat is None:
        return Text("No chats yet", style=DIM)

    messages = state.current_messages()
    if not messages:
        if state.pending_load_chat_id == chat.id:
            return Text("Loading messages…", style=DIM)
        return Text("No messages yet", style=DIM)

    # scroll_offset counts messages back from the newest
    offset = min(state.scroll_offset, len(messages) - 1)
    end = len(messages) - offset
    visible = messages[max(0, end - max(1, height)) : end]

    text = Text()
    for msg in visible:
        if msg.outgoing:
            text.append(f"{msg.sender_display_name}: {msg.text}", style="#64c864")
            if msg.failed:
                text.append("  (not sent)", style="bold red")
        else:
            text.append(f"{msg.sender_display_name}: ", style="bold #82b4e6")
            text.append(msg.text, style="#dcdcdc")
        text.append("\n")
    return text


def render_input(state: AppState) -> Text:
    if state.mode is Mode.INSERT:
        return Text(state.input_buffer + "█", style="white")
    if state.mode is Mode.COMMAND:
        return Text(":" + state.command_buffer + "█", style="white")
    if state.status:
        return Text(state.status, style="yellow")
    return Text("press i to type", style=DIM)


def input_title(state: AppState) -> str:
    if state.mode is Mode.INSERT:
        return " INSERT "
    if state.mode is Mode.COMMAND:
        return " COMMAND "
    return " type to send "


def render_overlay(state: AppState) -> Optional[Text]:
    """Popup contents for the picker-style modes, or None when hidden."""
    text = Text()
    if state.mode is Mode.SEARCH:
        text.append(f"/{state.search_query}█\n\n", style="bold")
        if not state.filtered_chat_indices:
            text.append("no matches", style=DIM)
        for row, index in enumerate(state.filtered_chat_indices):
            chat = state.chats[index]
            marker = "> " if row == state.search_selected else "  "
            style = f"bold {ACCENT}" if row == state.search_selected else ""
            text.append(f"{marker}{chat.name}\n", style=style)
        return text

    if state.mode is Mode.ACCOUNT_PICKER:
        rows = [(account_id, label) for account_id, label in state.accounts]
        rows.append(("", "+ Add account"))
        for row, (account_id, label) in enumerate(rows):
            selected = row == state.account_picker_selected
            marker = "> " if selected else "  "
            suffix = " (active)" if account_id and account_id == state.current_account_id else ""
            text.append(f"{marker}{label}{suffix}\n", style=f"bold {ACCENT}" if selected else "")
        return text

    if state.mode is Mode.FIND_USER:
        text.append(f"@{state.find_query}█\n\n", style="bold")
        result = state.find_result
        if result is None:
            text.append("Enter to search by username or phone", style=DIM)
        elif result.status is FindStatus.SEARCHING:
            text.append("Searching…", style=DIM)
        elif result.status is FindStatus.FOUND:
            text.append(f"Found: {result.name}. Enter to open the chat", style="green")
        elif result.status is FindStatus.NOT_FOUND:
            text.append("No user found", style="yellow")
        else:
            text.append(f"Lookup failed: {result.error}", style="red")
        return text

    return None


OVERLAY_TITLES = {
    Mode.SEARCH: " search ",
    Mode.ACCOUNT_PICKER: " accounts ",
    Mode.FIND_USER: " find user ",
}


class BifrostApp(App):
    CSS_PATH = "main.tcss"

    ENABLE_COMMAND_PALETTE = False

    BINDINGS = [
        Binding("ctrl+c", "interrupt", "Quit", show=False, priority=True),
    ]

    def __init__(self, state: AppState, orchestrator: Orchestrator, me: str = "", **kwargs):
        super().__init__(**kwargs)
        self.app_state = state
        self.orchestrator = orchestrator
        self.me = me
        self._exiting = False

    def compose(self) -> ComposeResult:
        yield Static(f"Bifrost @{self.me}" if self.me else "Bifrost", id="app-header", markup=False)
        with Horizontal(id="panels"):
            yield Static(id="friends")
            yield Static(id="chat")
        yield Static(id="input-bar")
        yield Static(
            "[j/k] Move [h/l] Panel [i] Insert [/] Search [@] Find [A] Accounts [:] Command [q] Quit",
            id="app-footer",
            markup=False,
        )
        yield Static(id="overlay")

    def on_mount(self) -> None:
        self.query_one("#friends", Static).border_title = " friends "
        self.query_one("#chat", Static).border_title = " chats "
        self.orchestrator.start_dialog_listing()
        self.orchestrator.start_updates()
        self.orchestrator.process_requests(self.app_state)
        self.set_interval(TICK_INTERVAL, self._tick)
        self.refresh_view()

    def _tick(self) -> None:
        if self.orchestrator.tick(self.app_state):
            logger.debug("tick merged background results")
        self.refresh_view()
        self._exit_if_requested()

    def on_key(self, event) -> None:
        event.prevent_default()
        event.stop()
        self._dispatch(KeyPress.from_event(event))

    def action_interrupt(self) -> None:
        self._dispatch(KeyPress(INTERRUPT_KEY))

    def _dispatch(self, key: KeyPress) -> None:
        previous_status = self.app_state.status
        action = handle_key(self.app_state, key)
        if action is not None:
            self.orchestrator.send_current(self.app_state, action.text)
        elif self.app_state.status == previous_status:
            # any key press dismisses a stale status line
            self.app_state.status = ""
        self.orchestrator.process_requests(self.app_state)
        self.refresh_view()
        self._exit_if_requested()

    def _exit_if_requested(self) -> None:
        if self.app_state.exit_requested and not self._exiting:
            self._exiting = True
            self.exit(outcome_for(self.app_state))

    def refresh_view(self) -> None:
        state = self.app_state
        try:
            friends = self.query_one("#friends", Static)
            chat = self.query_one("#chat", Static)
            input_bar = self.query_one("#input-bar", Static)
            overlay = self.query_one("#overlay", Static)
        except Exception:
            # not composed yet (or already torn down)
            return

        friends.update(render_friends(state))
        friends.set_class(state.panel is Panel.FRIENDS, "focused")
        chat.set_class(state.panel is Panel.CONVERSATION, "focused")

        current = state.current_chat()
        chat.border_title = f" {current.name} " if current else " chats "
        height = max(1, chat.size.height - 2) if chat.size.height else 20
        chat.update(render_messages(state, height))

        input_bar.border_title = input_title(state)
        input_bar.set_class(state.mode in (Mode.INSERT, Mode.COMMAND), "active")
        input_bar.update(render_input(state))

        overlay_text = render_overlay(state)
        overlay.display = overlay_text is not None
        if overlay_text is not None:
            overlay.border_title = OVERLAY_TITLES.get(state.mode, "")
            overlay.update(overlay_text)


# ───────── session selection phase ─────────
def _create_account(registry: AccountRegistry, console: Console) -> str:
    default = f"Account {len(registry.accounts) + 1}" if registry.has_accounts() else "Personal"
    name = prompt_account_name(console, default=default)
    account_id = registry.add_account("", name)
    registry.set_active(account_id)
    registry.save()
    return account_id


async def run_session(registry: AccountRegistry, api_id: int, api_hash: str, console: Console) -> SessionOutcome:
    """Connect the active account, run the UI, and report why it ended."""
    account = registry.get_active_account()
    if account is None:
        raise SessionError("No active account")

    transport = TelethonTransport(registry.session_path(account.id), api_id, api_hash)
    console.print(f"🔌 Connecting {account.name}...")
    try:
        await transport.connect()
        if not await transport.is_authorized():
            phone = await authenticate(transport, console)
            if phone and account.phone in ("", "Migrated"):
                account.phone = phone
                registry.save()
        me = await transport.get_me_name()
    except BifrostError:
        await transport.disconnect()
        raise
    except Exception as e:
        await transport.disconnect()
        raise SessionError(f"Could not connect to Telegram: {e}") from e
    console.print(f"✅ Logged in as @{me}")

    context = SessionContext(account_id=account.id, accounts=registry.labels())
    state = AppState.with_welcome()
    state.set_account_info(context.account_id, context.accounts)
    orchestrator = Orchestrator(transport, context)
    app = BifrostApp(state, orchestrator, me=me)
    try:
        outcome = await app.run_async()
    finally:
        await orchestrator.shutdown()
        await transport.disconnect()
    return outcome if isinstance(outcome, SessionOutcome) else SessionOutcome(ExitReason.QUIT)


async def run(console: Optional[Console] = None) -> None:
    console = console or Console()
    api_id, api_hash = get_api_credentials(console=console)

    registry = AccountRegistry.load()
    if not registry.has_accounts() or registry.get_active_account() is None:
        if registry.has_accounts():
            registry.set_active(registry.accounts[0].id)
            registry.save()
        else:
            _create_account(registry, console)

    while True:
        outcome = await run_session(registry, api_id, api_hash, console)
        logger.info("Session ended: %s", outcome.reason.value)
        if outcome.reason is ExitReason.SWITCH and outcome.account_id:
            registry.set_active(outcome.account_id)
            registry.save()
        elif outcome.reason is ExitReason.ADD:
            _create_account(registry, console)
        elif outcome.reason is ExitReason.DISCONNECT:
            AccountRegistry.delete_session(registry.active)
            console.print("🔒 Session removed")
            return
        else:
            return


def main() -> int:
    dotenv.load_dotenv()
    configure_logging()
    console = Console()
    try:
        asyncio.run(run(console))
    except BifrostError as e:
        console.print(f"[red]❌ {e}[/red]")
        return 1
    except KeyboardInterrupt:
        return 130
    console.print("👋 Goodbye!")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
