"""
Vault sync engine.

Drives `bw status` -> `bw list items` -> `bw list folders` in that order,
turns raw vault records into DisplayItems, and decides whether a failure
means "unlock again" or "something is actually broken".
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable

from bw_cli import (
    BitwardenCLI,
    BitwardenError,
    ConnectionSettings,
    Fatal,
    NeedsConfiguration,
    ProcessError,
    ProcessOutputUnparseable,
    ProcessSpawnFailure,
    SessionExpired,
    UnlockRejected,
    VaultLocked,
)
from session_store import SessionStore

logger = logging.getLogger(__name__)

CATEGORY_LABELS = {
    1: "login credential",
    2: "secure note",
    3: "credit card",
    4: "identity",
}
OTHER_CATEGORY = "other"
UNCATEGORIZED = "uncategorized"

# bw unlock --raw prints the session key; anything this short is not one
MIN_SESSION_LENGTH = 10

SESSION_ERROR_HINTS = (
    "not authenticated",
    "session",
    "unauthorized",
    "invalid",
    "vault is locked",
)


class SyncState(Enum):
    NEEDS_CONFIGURATION = "needs_configuration"
    CHECKING = "checking"
    LOCKED = "locked"
    SYNCING = "syncing"
    READY = "ready"
    IDLE = "idle"


@dataclass
class Folder:
    id: str
    name: str

    @classmethod
    def from_dict(cls, data: dict) -> "Folder":
        return cls(id=data.get("id") or UNCATEGORIZED, name=data.get("name") or "")


@dataclass
class DisplayItem:
    id: str
    title: str
    username: str = ""
    password: str = ""
    url: str = ""
    notes: str = ""
    category: str = OTHER_CATEGORY
    folder_id: str = UNCATEGORIZED
    folder_name: str = ""
    has_totp: bool = False
    created: str = ""
    updated: str = ""


@dataclass
class VaultSnapshot:
    items: list[DisplayItem] = field(default_factory=list)
    folders: list[Folder] = field(default_factory=list)

    def get(self, item_id: str) -> DisplayItem | None:
        for item in self.items:
            if item.id == item_id:
                return item
        return None


def category_for(type_code) -> str:
    return CATEGORY_LABELS.get(type_code, OTHER_CATEGORY)


def first_uri(login: dict) -> str:
    for entry in login.get("uris") or []:
        if isinstance(entry, dict) and entry.get("uri"):
            return entry["uri"]
    return ""


def has_totp_seed(login: dict) -> bool:
    totp = login.get("totp")
    return isinstance(totp, str) and totp != ""


def to_display_item(
    raw: dict, folder_names: dict[str, str] | None = None
) -> DisplayItem:
    """Project a raw vault record onto the fields the UI shows."""
    login = raw.get("login") or {}
    folder_id = raw.get("folderId") or UNCATEGORIZED
    folder_names = folder_names or {}
    return DisplayItem(
        id=raw.get("id", ""),
        title=raw.get("name") or "",
        username=login.get("username") or "",
        password=login.get("password") or "",
        url=first_uri(login),
        notes=raw.get("notes") or "",
        category=category_for(raw.get("type")),
        folder_id=folder_id,
        folder_name=folder_names.get(folder_id, ""),
        has_totp=has_totp_seed(login),
        created=raw.get("creationDate") or "",
        updated=raw.get("revisionDate") or "",
    )


def build_snapshot(raw_items: list, raw_folders: list) -> VaultSnapshot:
    folders = [Folder.from_dict(f) for f in raw_folders if isinstance(f, dict)]
    names = {f.id: f.name for f in folders}
    items = [to_display_item(r, names) for r in raw_items if isinstance(r, dict)]
    return VaultSnapshot(items=items, folders=folders)


def format_timestamp(value: str) -> str:
    """ISO timestamp from bw -> 'YYYY-MM-DD HH:MM', or the input unchanged."""
    if not value:
        return ""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value
    return parsed.strftime("%Y-%m-%d %H:%M")


def looks_like_session_error(message: str) -> bool:
    lowered = message.lower()
    return any(hint in lowered for hint in SESSION_ERROR_HINTS)


class VaultSync:
    """Session-aware sync state machine over one SessionStore."""

    def __init__(
        self,
        store: SessionStore,
        cli_factory: Callable[[ConnectionSettings], BitwardenCLI] = BitwardenCLI,
        on_synced: Callable[[VaultSnapshot], None] | None = None,
    ):
        self.store = store
        self.cli_factory = cli_factory
        self.on_synced = on_synced
        self.state = SyncState.IDLE
        self.snapshot: VaultSnapshot | None = None

    @property
    def cli(self) -> BitwardenCLI:
        return self.cli_factory(self.store.settings)

    def _enter(self, state: SyncState) -> None:
        self.state = state
        # Decrypted items are only served while the vault is unlocked
        if state in (SyncState.LOCKED, SyncState.NEEDS_CONFIGURATION):
            self.snapshot = None

    def _unconfigured(self) -> NeedsConfiguration:
        self._enter(SyncState.NEEDS_CONFIGURATION)
        return NeedsConfiguration("Set the Bitwarden CLI path first")

    def _locked(self, status: str = "locked") -> VaultLocked:
        self._enter(SyncState.LOCKED)
        return VaultLocked("Unlock Bitwarden first", status=status)

    def _expire(self, session: str) -> SessionExpired:
        # A concurrent unlock may already have replaced the token
        if self.store.session == session:
            self.store.clear_session()
        self._enter(SyncState.LOCKED)
        return SessionExpired()

    async def sync(self) -> VaultSnapshot:
        """Run one full sync cycle.

        Raises NeedsConfiguration, VaultLocked (SessionExpired when a saved
        session was discarded), ProcessSpawnFailure or Fatal. Every failure
        that leaves the vault locked also drops the previous snapshot.
        """
        if not self.store.settings.configured:
            raise self._unconfigured()

        cli = self.cli
        session = self.store.session

        self._enter(SyncState.CHECKING)
        try:
            status = await cli.status(session=session)
        except ProcessSpawnFailure:
            self._enter(SyncState.IDLE)
            raise
        except ProcessOutputUnparseable:
            if session:
                raise self._expire(session)
            raise self._locked()
        except ProcessError as e:
            if session:
                raise self._expire(session)
            self._enter(SyncState.IDLE)
            raise Fatal(e.message) from e

        vault_status = status.get("status", "") if isinstance(status, dict) else ""
        if vault_status != "unlocked":
            raise self._locked(vault_status or "locked")

        self._enter(SyncState.SYNCING)
        try:
            raw_items = await cli.list_items(session=session)
        except ProcessSpawnFailure:
            self._enter(SyncState.IDLE)
            raise
        except ProcessError as e:
            if session:
                raise self._expire(session)
            self._enter(SyncState.IDLE)
            raise Fatal(e.message) from e
        except ProcessOutputUnparseable as e:
            self._enter(SyncState.IDLE)
            raise Fatal("Cannot parse Bitwarden items") from e

        try:
            raw_folders = await cli.list_folders(session=session)
        except ProcessSpawnFailure:
            self._enter(SyncState.IDLE)
            raise
        except ProcessError as e:
            if session and looks_like_session_error(e.message):
                raise self._expire(session)
            self._enter(SyncState.IDLE)
            raise Fatal(e.message) from e
        except ProcessOutputUnparseable as e:
            self._enter(SyncState.IDLE)
            raise Fatal("Cannot parse Bitwarden folders") from e

        snapshot = build_snapshot(
            raw_items if isinstance(raw_items, list) else [],
            raw_folders if isinstance(raw_folders, list) else [],
        )
        self.snapshot = snapshot
        self._enter(SyncState.READY)
        logger.info(
            "Synced %d items, %d folders", len(snapshot.items), len(snapshot.folders)
        )
        if self.on_synced:
            self.on_synced(snapshot)
        return snapshot

    async def totp(self, item_id: str) -> str:
        """Current TOTP code for item_id from `bw get totp`.

        A session-shaped failure discards the saved session the same way a
        failed sync does.
        """
        if not self.store.settings.configured:
            raise self._unconfigured()
        session = self.store.session
        if not session:
            raise self._locked()

        try:
            code = await self.cli.get_totp(item_id, session=session)
        except ProcessSpawnFailure:
            raise
        except ProcessError as e:
            if looks_like_session_error(e.message):
                raise self._expire(session)
            raise Fatal(e.message or "Failed to generate code") from e
        if not code:
            raise Fatal("bw returned an empty TOTP code")
        return code

    async def unlock(self, password: str) -> str:
        """Unlock with the master password and persist the session key."""
        if not password:
            raise UnlockRejected("Master password is required")
        if not self.store.settings.configured:
            raise self._unconfigured()

        try:
            session = await self.cli.unlock(password)
        except ProcessError as e:
            raise UnlockRejected(e.message or "Failed to unlock") from e

        if len(session) <= MIN_SESSION_LENGTH:
            raise UnlockRejected("Unlock failed, invalid session key")

        self.store.save_session(session)
        logger.info("Vault unlocked")
        return session

    async def unlock_and_sync(self, password: str) -> VaultSnapshot:
        await self.unlock(password)
        return await self.sync()

    async def lock(self) -> None:
        """Forget the session and ask bw to lock. The bw call is best effort."""
        self.store.clear_session()
        self._enter(SyncState.LOCKED)
        if not self.store.settings.configured:
            return
        try:
            await self.cli.lock()
        except BitwardenError as e:
            logger.warning("bw lock failed: %s", e.message)
