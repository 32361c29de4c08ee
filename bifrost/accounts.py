"""Multi-account registry persisted as JSON next to per-account session files."""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

logger = logging.getLogger("bifrost.accounts")

SESSION_SUFFIX = ".session"


def get_config_dir() -> Path:
    """Directory holding accounts.json, sessions/ and the debug log."""
    override = os.getenv("BIFROST_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".bifrost"


def get_accounts_path() -> Path:
    return get_config_dir() / "accounts.json"


def get_sessions_dir() -> Path:
    return get_config_dir() / "sessions"


def get_session_path_for_account(account_id: str) -> Path:
    return get_sessions_dir() / f"{account_id}{SESSION_SUFFIX}"


@dataclass
class Account:
    id: str
    phone: str
    name: str


@dataclass
class AccountRegistry:
    active: str = ""
    accounts: List[Account] = field(default_factory=list)

    @classmethod
    def load(cls) -> "AccountRegistry":
        path = get_accounts_path()
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                return cls(
                    active=data.get("active", ""),
                    accounts=[Account(**a) for a in data.get("accounts", [])],
                )
            except (OSError, ValueError, TypeError):
                logger.exception("Could not read %s; starting with no accounts", path)
                return cls()
        return cls._migrate_legacy_session()

    @classmethod
    def _migrate_legacy_session(cls) -> "AccountRegistry":
        """Adopt a pre-multi-account session file as the "default" account."""
        legacy = get_config_dir() / f"session{SESSION_SUFFIX}"
        if not legacy.exists():
            return cls()

        target = get_session_path_for_account("default")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            legacy.rename(target)
        except OSError:
            logger.exception("Legacy session migration failed")
            return cls()

        registry = cls(
            active="default",
            accounts=[Account(id="default", phone="Migrated", name="Default")],
        )
        try:
            registry.save()
        except OSError:
            logger.exception("Could not save migrated account registry")
        logger.info("Migrated legacy session to account 'default'")
        return registry

    def save(self) -> None:
        path = get_accounts_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"active": self.active, "accounts": [asdict(a) for a in self.accounts]}
        with open(path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)

    def get_active_account(self) -> Optional[Account]:
        for account in self.accounts:
            if account.id == self.active:
                return account
        return None

    def get_account(self, account_id: str) -> Optional[Account]:
        for account in self.accounts:
            if account.id == account_id:
                return account
        return None

    def add_account(self, phone: str, name: str) -> str:
        # ids must stay unique even after hand edits of accounts.json
        n = len(self.accounts) + 1
        while self.get_account(f"account_{n}") is not None:
            n += 1
        account_id = f"account_{n}"
        self.accounts.append(Account(id=account_id, phone=phone, name=name))
        if not self.active:
            self.active = account_id
        return account_id

    def set_active(self, account_id: str) -> bool:
        if self.get_account(account_id) is None:
            return False
        self.active = account_id
        return True

    def has_accounts(self) -> bool:
        return bool(self.accounts)

    def labels(self) -> List[Tuple[str, str]]:
        """(id, display label) pairs in registry order, for the account picker."""
        out = []
        for account in self.accounts:
            label = account.name
            if account.phone:
                label = f"{account.name} ({account.phone})"
            out.append((account.id, label))
        return out

    @staticmethod
    def session_path(account_id: str) -> Path:
        return get_session_path_for_account(account_id)

    @staticmethod
    def delete_session(account_id: str) -> bool:
        path = get_session_path_for_account(account_id)
        if path.exists():
            path.unlink()
            logger.info("Deleted session for %s", account_id)
            return True
        return False
