"""
Dict-shaped service calls for the presentation layer.

Each call returns {"success": True, ...} or
{"success": False, "status": ..., "error": ...} and never raises for vault or
CLI failures. `status` names the screen the caller should show next:
"unconfigured", a bw vault status such as "locked", "unavailable" (bw cannot
be started), "rejected" (unlock refused) or "error".
"""

import logging
from dataclasses import asdict

from bw_cli import (
    BitwardenCLI,
    BitwardenError,
    ConnectionSettings,
    NeedsConfiguration,
    ProcessSpawnFailure,
    UnlockRejected,
    VaultLocked,
)
from vault_sync import VaultSync

logger = logging.getLogger(__name__)


def failure(error: BitwardenError) -> dict:
    if isinstance(error, NeedsConfiguration):
        status = "unconfigured"
    elif isinstance(error, VaultLocked):
        status = error.status
    elif isinstance(error, ProcessSpawnFailure):
        status = "unavailable"
    elif isinstance(error, UnlockRejected):
        status = "rejected"
    else:
        status = "error"
    return {
        "success": False,
        "status": status,
        "error": error.message or "Unknown error",
    }


async def test_connection(
    cli_path: str, client_id: str = "", client_secret: str = ""
) -> dict:
    """Check that cli_path runs and reports a version."""
    cli = BitwardenCLI(ConnectionSettings(cli_path, client_id, client_secret))
    try:
        version = await cli.version()
    except BitwardenError as e:
        logger.info("Connection test failed: %s", e.message)
        return {"success": False, "error": e.message or "Unknown error"}
    return {"success": True, "version": version}


async def fetch_passwords(sync: VaultSync) -> dict:
    try:
        snapshot = await sync.sync()
    except BitwardenError as e:
        return failure(e)
    return {
        "success": True,
        "items": [asdict(item) for item in snapshot.items],
        "folders": [asdict(folder) for folder in snapshot.folders],
    }


async def unlock(sync: VaultSync, password: str) -> dict:
    """Unlock, then sync straight away so the vault can be listed."""
    try:
        await sync.unlock_and_sync(password)
    except BitwardenError as e:
        return failure(e)
    return {"success": True, "sessionKey": sync.store.session}


async def generate_totp(sync: VaultSync, item_id: str) -> dict:
    if not item_id:
        return {"success": False, "status": "error", "error": "Missing item id"}
    try:
        code = await sync.totp(item_id)
    except BitwardenError as e:
        return failure(e)
    return {"success": True, "code": code}
