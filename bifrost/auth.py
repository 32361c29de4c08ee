"""Interactive Telegram sign-in, run before the UI takes over the terminal."""

import logging
from typing import Optional

from rich.console import Console
from rich.prompt import Prompt

from .api_interface import TelethonTransport
from .errors import SessionError

logger = logging.getLogger("bifrost.auth")


async def authenticate(transport: TelethonTransport, console: Optional[Console] = None) -> str:
    """Sign the transport's session in, prompting for phone, code and 2FA.

    Returns the phone number that was used.
    """
    console = console or Console()
    console.print("[bold]📱 Telegram authentication[/bold]")
    entered = {}

    def _phone() -> str:
        phone = Prompt.ask("Phone number (with country code, e.g. +91...)", console=console).strip()
        entered["phone"] = phone
        return phone

    def _code() -> str:
        return Prompt.ask("Login code sent to your Telegram", console=console).strip()

    def _password() -> str:
        return Prompt.ask("2FA password", password=True, console=console)

    try:
        await transport.client.start(phone=_phone, code_callback=_code, password=_password)
    except Exception as e:
        logger.exception("Sign-in failed")
        raise SessionError(f"Sign-in failed: {e}") from e

    console.print("[green]✅ Logged in successfully![/green]")
    return entered.get("phone", "")


def prompt_account_name(console: Optional[Console] = None, default: str = "Personal") -> str:
    console = console or Console()
    return Prompt.ask("Name for this account", default=default, console=console).strip() or default
