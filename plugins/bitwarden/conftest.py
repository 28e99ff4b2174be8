"""Shared fixtures: an in-memory store and a scripted stand-in for bw."""

import json
import stat

import pytest

from bw_cli import ConnectionSettings
from session_store import SessionStore

SESSION = "c2Vzc2lvbi1rZXktdmFsaWQ="
MASTER_PASSWORD = "hunter2"

VAULT_ITEMS = [
    {
        "id": "gh",
        "type": 1,
        "name": "GitHub",
        "login": {
            "username": "octocat",
            "password": "pw-github",
            "totp": "JBSWY3DPEHPK3PXP",
            "uris": [{"match": None, "uri": "https://github.com/login"}],
        },
        "folderId": "f1",
        "notes": None,
        "creationDate": "2024-01-01T00:00:00.000Z",
        "revisionDate": "2024-02-03T04:05:06.000Z",
    },
    {
        "id": "mail",
        "type": 1,
        "name": "Mail",
        "login": {"username": "me@example.com", "password": "pw-mail", "totp": None},
        "folderId": None,
        "notes": None,
    },
    {
        "id": "wifi",
        "type": 2,
        "name": "Home Wifi",
        "login": None,
        "folderId": None,
        "notes": "ssid: home\npassphrase: correct horse",
    },
]

VAULT_FOLDERS = [{"id": "f1", "name": "Work"}]

BW_SCRIPT = """#!/bin/sh
case "$1" in
  --version) echo "2024.9.0" ;;
  status)
    if [ "$BW_SESSION" = "{session}" ]; then
      echo '{{"status":"unlocked"}}'
    else
      echo '{{"status":"locked"}}'
    fi ;;
  unlock)
    read -r pw
    if [ "$pw" = "{password}" ]; then
      echo "{session}"
    else
      echo "Invalid master password." >&2
      exit 1
    fi ;;
  list)
    if [ "$BW_SESSION" != "{session}" ]; then
      echo "Vault is locked." >&2
      exit 1
    fi
    if [ "$2" = "items" ]; then cat "{items}"; else cat "{folders}"; fi ;;
  get)
    if [ "$BW_SESSION" != "{session}" ]; then
      echo "Vault is locked." >&2
      exit 1
    fi
    echo "123456" ;;
  lock) echo "Your vault is locked." ;;
  *) exit 2 ;;
esac
"""


class MemoryStorage:
    def __init__(self, data=None):
        self.data = dict(data or {})

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value):
        self.data[key] = value
        return True

    def delete(self, key):
        self.data.pop(key, None)
        return True


@pytest.fixture
def vault_bw(tmp_path):
    """Path to a bw script that serves VAULT_ITEMS once unlocked."""
    items = tmp_path / "items.json"
    items.write_text(json.dumps(VAULT_ITEMS))
    folders = tmp_path / "folders.json"
    folders.write_text(json.dumps(VAULT_FOLDERS))

    script = tmp_path / "bw"
    script.write_text(
        BW_SCRIPT.format(
            session=SESSION, password=MASTER_PASSWORD, items=items, folders=folders
        )
    )
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return str(script)


@pytest.fixture
def store(vault_bw):
    """SessionStore configured for vault_bw, with no session yet."""
    session_store = SessionStore(MemoryStorage())
    session_store.save_settings(ConnectionSettings(cli_path=vault_bw))
    return session_store
