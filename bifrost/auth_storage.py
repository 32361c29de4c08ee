"""Telegram API credential lookup.

Order: environment (a .env file is loaded at startup), then the OS keyring,
then an interactive prompt whose answers are written back to the keyring.
"""

import logging
import os
from typing import Optional, Tuple

import keyring
from keyring.errors import KeyringError
from rich.console import Console
from rich.prompt import Prompt

from .errors import CredentialsError

serviceKeyring = "bifrost"

API_ID_ENV = "TELEGRAM_API_ID"
API_HASH_ENV = "TELEGRAM_API_HASH"

logger = logging.getLogger("bifrost.auth")


def _keyring_get(key: str) -> Optional[str]:
    try:
        return keyring.get_password(serviceKeyring, key)
    except KeyringError:
        logger.debug("Keyring unavailable while reading %s", key)
        return None


def _keyring_set(key: str, value: str) -> None:
    try:
        keyring.set_password(serviceKeyring, key, value)
    except KeyringError:
        logger.warning("Keyring unavailable; %s not saved", key)


def parse_api_id(raw: str) -> int:
    try:
        return int(str(raw).strip())
    except ValueError:
        raise CredentialsError(f"Invalid API_ID {raw!r}: expected a number") from None


def load_stored_credentials() -> Optional[Tuple[int, str]]:
    """Credentials from the environment or keyring, without prompting."""
    api_id = os.getenv(API_ID_ENV)
    api_hash = os.getenv(API_HASH_ENV)
    if api_id and api_hash:
        return parse_api_id(api_id), api_hash.strip()

    api_id = _keyring_get("api_id")
    api_hash = _keyring_get("api_hash")
    if api_id and api_hash:
        return parse_api_id(api_id), api_hash
    return None


def prompt_for_credentials(console: Optional[Console] = None) -> Tuple[int, str]:
    console = console or Console()
    console.print("[bold]🔑 Telegram API credentials[/bold]")
    console.print("Get these from https://my.telegram.org")

    while True:
        raw_id = Prompt.ask("API_ID", console=console)
        try:
            api_id = parse_api_id(raw_id)
            break
        except CredentialsError:
            console.print("[red]❌ Invalid API_ID. Please enter a valid number.[/red]")

    while True:
        api_hash = Prompt.ask("API_HASH", console=console).strip()
        if api_hash:
            break
        console.print("[red]❌ API_HASH cannot be empty.[/red]")

    return api_id, api_hash


def get_api_credentials(interactive: bool = True, console: Optional[Console] = None) -> Tuple[int, str]:
    found = load_stored_credentials()
    if found:
        return found
    if not interactive:
        raise CredentialsError(
            f"Set {API_ID_ENV} and {API_HASH_ENV} or run interactively to enter them"
        )
    api_id, api_hash = prompt_for_credentials(console)
    _keyring_set("api_id", str(api_id))
    _keyring_set("api_hash", api_hash)
    return api_id, api_hash

