"""
Session store - connection settings and the vault session key.

Both live in the system keyring under one service name. The store is an
explicit object handed to whoever needs it; nothing is cached at module level.
"""

import json
import logging

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from bw_cli import ConnectionSettings

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "hamr-bitwarden"
SETTINGS_KEY = "settings"
SESSION_KEY = "session"


class KeyringStorage:
    """Key-value storage backed by the keyring library."""

    def __init__(self, service: str = KEYRING_SERVICE):
        self.service = service

    def get(self, key: str) -> str | None:
        try:
            return keyring.get_password(self.service, key)
        except KeyringError as e:
            logger.warning("Cannot read %s from keyring: %s", key, e)
            return None

    def set(self, key: str, value: str) -> bool:
        try:
            keyring.set_password(self.service, key, value)
            return True
        except KeyringError as e:
            logger.warning("Cannot write %s to keyring: %s", key, e)
            return False

    def delete(self, key: str) -> bool:
        try:
            keyring.delete_password(self.service, key)
            return True
        except PasswordDeleteError:
            # Already gone
            return True
        except KeyringError as e:
            logger.warning("Cannot delete %s from keyring: %s", key, e)
            return False


class SessionStore:
    """Owns ConnectionSettings and the single live session token."""

    def __init__(self, storage=None):
        self.storage = storage if storage is not None else KeyringStorage()
        self.settings = ConnectionSettings()
        self.session: str | None = None

    def load(self) -> "SessionStore":
        """Read settings and session from storage, replacing what is held."""
        self.settings = self._read_settings()
        self.session = self.storage.get(SESSION_KEY) or None
        logger.debug(
            "Loaded settings (configured=%s, session=%s)",
            self.settings.configured,
            self.session is not None,
        )
        return self

    def _read_settings(self) -> ConnectionSettings:
        raw = self.storage.get(SETTINGS_KEY)
        if not raw:
            return ConnectionSettings()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Stored settings are not valid JSON, using defaults")
            return ConnectionSettings()
        if not isinstance(data, dict):
            return ConnectionSettings()
        return ConnectionSettings.from_dict(data)

    def save_settings(self, settings: ConnectionSettings) -> bool:
        self.settings = settings
        return self.storage.set(SETTINGS_KEY, json.dumps(settings.to_dict()))

    def save_session(self, session: str) -> bool:
        self.session = session
        return self.storage.set(SESSION_KEY, session)

    def clear_session(self) -> None:
        if self.session is not None:
            logger.info("Discarding saved session")
        self.session = None
        self.storage.delete(SESSION_KEY)
