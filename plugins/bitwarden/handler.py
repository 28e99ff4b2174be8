#!/usr/bin/env python3
"""
Bitwarden plugin - search and copy credentials from a Bitwarden vault.

Requires:
- bw (Bitwarden CLI), its path set through the plugin's settings form
- keyring, which stores the CLI settings and the vault session key

The plugin asks for configuration or the master password when it needs them.
Opening an item with 2FA shows its TOTP code, refreshed every 30 seconds.
"""

import logging
import sys
from pathlib import Path
from typing import Awaitable, Callable

sys.path.insert(0, str(Path(__file__).parent.parent))
from sdk.hamr_sdk import HamrPlugin, is_debug_enabled

import services
from bw_cli import BitwardenCLI, ConnectionSettings, find_bw
from session_store import SessionStore
from totp import TotpScheduler
from vault_sync import DisplayItem, VaultSnapshot, VaultSync, format_timestamp

logger = logging.getLogger(__name__)

SETTINGS_CONTEXT = "__settings__"
UNLOCK_CONTEXT = "__unlock__"
DETAIL_PREFIX = "detail:"
TOTP_ROW_ID = "field:totp"
MAX_RESULTS = 50

CATEGORY_ICONS = {
    "login credential": "password",
    "secure note": "note",
    "credit card": "credit_card",
    "identity": "person",
}
CATEGORY_BADGES = {
    "secure note": {"icon": "note", "color": "#9c27b0"},
    "credit card": {"icon": "credit_card", "color": "#ff9800"},
    "identity": {"icon": "person", "color": "#4caf50"},
}


class BitwardenApp:
    """Everything the handlers share: session store, sync engine, TOTP timers."""

    def __init__(
        self,
        store: SessionStore,
        cli_factory: Callable[[ConnectionSettings], BitwardenCLI] = BitwardenCLI,
        scheduler_factory: Callable[..., TotpScheduler] = TotpScheduler,
    ):
        self.store = store
        self.sync = VaultSync(store, cli_factory, on_synced=self._on_synced)
        self.totp = scheduler_factory(self._fetch_totp)
        self.detail_id: str | None = None
        self.publish: Callable[[list[dict]], Awaitable[None]] | None = None

    async def _fetch_totp(self, item_id: str) -> str:
        return await self.sync.totp(item_id)

    def _on_synced(self, snapshot: VaultSnapshot) -> None:
        if self.detail_id and snapshot.get(self.detail_id) is None:
            self.detail_id = None
        self.totp.retain_only({self.detail_id} if self.detail_id else set())

    def show_detail(self, item: DisplayItem) -> None:
        if self.detail_id and self.detail_id != item.id:
            self.totp.unsubscribe(self.detail_id)
        self.detail_id = item.id
        if item.has_totp:
            self.totp.subscribe(item.id, self.push_totp)

    def leave_detail(self) -> None:
        if self.detail_id:
            self.totp.unsubscribe(self.detail_id)
        self.detail_id = None

    async def push_totp(self, item_id: str, code: str, countdown: int) -> None:
        if self.detail_id != item_id or self.publish is None:
            return
        await self.publish([totp_patch(code, countdown)])


def item_icon(item: DisplayItem) -> str:
    return CATEGORY_ICONS.get(item.category, "key")


def item_chips(item: DisplayItem) -> list[dict]:
    chips = []
    if item.has_totp:
        chips.append({"text": "2FA", "icon": "schedule"})
    if item.folder_name:
        chips.append({"text": item.folder_name, "icon": "folder"})
    return chips


def item_actions(item: DisplayItem) -> list[dict]:
    actions = []
    if item.username:
        actions.append(
            {"id": "copy_username", "name": "Copy Username", "icon": "person"}
        )
    if item.password:
        actions.append(
            {"id": "copy_password", "name": "Copy Password", "icon": "key"}
        )
    if item.has_totp:
        actions.append({"id": "copy_totp", "name": "Copy TOTP", "icon": "schedule"})
    if item.url:
        actions.append(
            {"id": "open_url", "name": "Open URL", "icon": "open_in_new"}
        )
    actions.append({"id": "view", "name": "Details", "icon": "info"})
    return actions


def item_to_result(item: DisplayItem) -> dict:
    result = {
        "id": item.id,
        "name": item.title or "Unknown",
        "description": item.username or item.notes[:50],
        "icon": item_icon(item),
        "verb": "Copy Password" if item.password else "View",
        "actions": item_actions(item),
    }
    badge = CATEGORY_BADGES.get(item.category)
    if badge:
        result["badges"] = [badge]
    chips = item_chips(item)
    if chips:
        result["chips"] = chips
    return result


def matches_query(item: DisplayItem, query: str) -> bool:
    q = query.lower()
    return any(
        q in field.lower()
        for field in (
            item.title,
            item.username,
            item.url,
            item.folder_name,
            item.category,
        )
    )


def filter_items(items: list[DisplayItem], query: str) -> list[DisplayItem]:
    query = query.strip()
    if not query:
        return items
    return [item for item in items if matches_query(item, query)]


def get_plugin_actions() -> list[dict]:
    """Get plugin-level actions for the action bar"""
    return [
        {"id": "sync", "name": "Sync Vault", "icon": "sync", "shortcut": "Ctrl+1"},
        {"id": "lock", "name": "Lock Vault", "icon": "lock", "shortcut": "Ctrl+2"},
        {
            "id": "settings",
            "name": "Settings",
            "icon": "settings",
            "shortcut": "Ctrl+3",
        },
        {"id": "test_connection", "name": "Test Connection", "icon": "lan"},
    ]


def settings_form(settings: ConnectionSettings) -> dict:
    return HamrPlugin.form(
        {
            "title": "Bitwarden CLI Settings",
            "submit_label": "Save",
            "cancel_label": "Cancel",
            "fields": [
                {
                    "id": "cliPath",
                    "type": "text",
                    "label": "CLI path",
                    "default_value": settings.cli_path or find_bw() or "",
                    "hint": "Full path to the bw executable",
                },
                {
                    "id": "clientId",
                    "type": "text",
                    "label": "API client id",
                    "default_value": settings.client_id,
                    "hint": "Optional, exported as BW_CLIENTID",
                },
                {
                    "id": "clientSecret",
                    "type": "password",
                    "label": "API client secret",
                    "default_value": settings.client_secret,
                    "hint": "Optional, exported as BW_CLIENTSECRET",
                },
            ],
        },
        context=SETTINGS_CONTEXT,
    )


def unlock_form(message: str = "") -> dict:
    return HamrPlugin.form(
        {
            "title": "Unlock Vault",
            "submit_label": "Unlock",
            "cancel_label": "Cancel",
            "fields": [
                {
                    "id": "password",
                    "type": "password",
                    "label": "Master Password",
                    "hint": message or "Enter your master password",
                },
            ],
        },
        context=UNLOCK_CONTEXT,
    )


def failure_response(app: BitwardenApp, result: dict) -> dict:
    """Turn a failed service result into the screen the user should see next."""
    status = result.get("status") or "error"
    message = result.get("error", "")
    if status == "unconfigured":
        return settings_form(app.store.settings)
    if status == "unavailable":
        return HamrPlugin.card(
            "Bitwarden CLI Not Found",
            markdown=f"**{message}**\n\n"
            "Install with `npm install -g @bitwarden/cli` and check the path in "
            "the plugin settings.",
        )
    if status == "rejected":
        return HamrPlugin.card("Unlock Failed", markdown=f"**Error:** {message}")
    if status == "error":
        return HamrPlugin.card("Bitwarden Error", markdown=f"**Error:** {message}")
    # Any bw vault status other than unlocked
    return unlock_form(message)


def totp_patch(code: str, countdown: int) -> dict:
    return {
        "id": TOTP_ROW_ID,
        "name": code or "Code unavailable",
        "description": f"Refreshes in {countdown}s",
    }


def detail_results(app: BitwardenApp, item: DisplayItem) -> list[dict]:
    rows = []
    if item.username:
        rows.append(
            {
                "id": "field:username",
                "name": item.username,
                "description": "Username",
                "icon": "person",
                "verb": "Copy",
            }
        )
    if item.password:
        rows.append(
            {
                "id": "field:password",
                "name": "••••••••",
                "description": "Password",
                "icon": "key",
                "verb": "Copy",
            }
        )
    if item.has_totp:
        row = totp_patch(app.totp.cached(item.id) or "", app.totp.countdown())
        row.update({"icon": "schedule", "verb": "Copy"})
        rows.append(row)
    if item.url:
        rows.append(
            {
                "id": "field:url",
                "name": item.url,
                "description": "URL",
                "icon": "open_in_new",
                "verb": "Open",
            }
        )
    if item.notes:
        rows.append(
            {
                "id": "field:notes",
                "name": item.notes.splitlines()[0][:80],
                "description": "Notes",
                "icon": "notes",
                "verb": "Copy",
            }
        )
    rows.append(
        {
            "id": "field:info",
            "name": item.category.capitalize(),
            "description": " · ".join(
                part
                for part in (
                    f"Folder: {item.folder_name or item.folder_id}",
                    f"Updated {format_timestamp(item.updated)}" if item.updated else "",
                )
                if part
            ),
            "icon": item_icon(item),
        }
    )
    return rows


def detail_response(app: BitwardenApp, item: DisplayItem) -> dict:
    app.show_detail(item)
    return HamrPlugin.results(
        detail_results(app, item),
        input_mode="realtime",
        placeholder=item.title,
        context=f"{DETAIL_PREFIX}{item.id}",
        navigate_forward=True,
    )


async def list_response(
    app: BitwardenApp, query: str = "", refresh: bool = False, **kwargs
) -> dict:
    """Results for the vault list, syncing first when nothing is loaded yet."""
    app.leave_detail()
    snapshot = app.sync.snapshot
    if refresh or snapshot is None:
        result = await services.fetch_passwords(app.sync)
        if not result["success"]:
            return failure_response(app, result)
        snapshot = app.sync.snapshot

    items = filter_items(snapshot.items, query)[:MAX_RESULTS]
    results = [item_to_result(item) for item in items]
    if not results:
        results = [
            {
                "id": "__no_results__",
                "name": f"No results for '{query}'" if query else "Vault is empty",
                "icon": "search_off",
            }
        ]
    return HamrPlugin.results(
        results,
        input_mode="realtime",
        placeholder=kwargs.get("placeholder", "Search vault..."),
        clear_input=kwargs.get("clear_input", False),
        plugin_actions=get_plugin_actions(),
    )


async def copy_field(app: BitwardenApp, item: DisplayItem, field: str) -> dict:
    if field == "username" and item.username:
        return HamrPlugin.copy_and_close(item.username)
    if field == "password" and item.password:
        return HamrPlugin.copy_and_close(item.password)
    if field == "notes" and item.notes:
        return HamrPlugin.copy_and_close(item.notes)
    if field == "url" and item.url:
        return HamrPlugin.open_url(item.url)
    if field == "totp" and item.has_totp:
        code = app.totp.cached(item.id)
        if not code:
            result = await services.generate_totp(app.sync, item.id)
            if not result["success"]:
                return failure_response(app, result)
            code = result["code"]
        return HamrPlugin.copy_and_close(code)
    return HamrPlugin.noop()


async def plugin_action(app: BitwardenApp, action: str | None) -> dict:
    if action == "sync":
        return await list_response(
            app, refresh=True, placeholder="Vault synced!", clear_input=True
        )
    if action == "lock":
        app.leave_detail()
        await app.sync.lock()
        logger.info("Vault locked from the action bar")
        return HamrPlugin.card("Vault Locked", content="Session key discarded.")
    if action == "settings":
        return settings_form(app.store.settings)
    if action == "test_connection":
        settings = app.store.settings
        result = await services.test_connection(
            settings.cli_path, settings.client_id, settings.client_secret
        )
        if result["success"]:
            return HamrPlugin.card(
                "Connection OK", content=f"Bitwarden CLI {result['version']}"
            )
        return HamrPlugin.card(
            "Connection Failed", markdown=f"**Error:** {result['error']}"
        )
    return HamrPlugin.error(f"Unknown action: {action}")


async def handle_item_action(
    app: BitwardenApp, item_id: str, action: str | None, context: str | None
) -> dict:
    if item_id == "__plugin__":
        return await plugin_action(app, action)
    if item_id == "__back__":
        return await list_response(app, clear_input=True)
    if item_id in ("__no_results__", "field:info"):
        return HamrPlugin.noop()

    snapshot = app.sync.snapshot
    if snapshot is None:
        return await list_response(app)

    if item_id.startswith("field:"):
        detail_id = (context or "").removeprefix(DETAIL_PREFIX)
        item = snapshot.get(detail_id)
        if item is None:
            return await list_response(app, clear_input=True)
        return await copy_field(app, item, item_id.removeprefix("field:"))

    item = snapshot.get(item_id)
    if item is None:
        return HamrPlugin.error("Item not found, try syncing the vault")

    if action == "view" or (not action and not item.password):
        return detail_response(app, item)
    if action == "copy_username":
        return await copy_field(app, item, "username")
    if action == "copy_totp":
        return await copy_field(app, item, "totp")
    if action == "open_url":
        return await copy_field(app, item, "url")
    return await copy_field(app, item, "password")


async def handle_form(app: BitwardenApp, form_data: dict, context: str | None) -> dict:
    if context == SETTINGS_CONTEXT:
        cli_path = (form_data.get("cliPath") or "").strip()
        if not cli_path:
            return HamrPlugin.error("CLI path is required")
        settings = ConnectionSettings(
            cli_path=cli_path,
            client_id=(form_data.get("clientId") or "").strip(),
            client_secret=(form_data.get("clientSecret") or "").strip(),
        )
        if not app.store.save_settings(settings):
            return HamrPlugin.error("Failed to save settings to the keyring")
        logger.info("Settings saved, CLI at %s", cli_path)
        return await list_response(app, refresh=True, clear_input=True)

    if context == UNLOCK_CONTEXT:
        result = await services.unlock(app.sync, form_data.get("password") or "")
        if not result["success"]:
            return failure_response(app, result)
        return await list_response(
            app, placeholder="Vault unlocked! Search...", clear_input=True
        )

    return HamrPlugin.error("Invalid context")


plugin = HamrPlugin(
    id="bitwarden",
    name="Bitwarden",
    description="Search and copy credentials from Bitwarden",
    icon="passkey",
)
app = BitwardenApp(SessionStore())
app.publish = plugin.send_update


@plugin.on_initial
async def handle_initial(params=None):
    """Handle initial request when plugin is opened."""
    return await list_response(app)


@plugin.on_search
async def handle_search(query: str, context: str | None):
    snapshot = app.sync.snapshot
    if snapshot and context and context.startswith(DETAIL_PREFIX):
        item = snapshot.get(context.removeprefix(DETAIL_PREFIX))
        if item is not None:
            return HamrPlugin.results(
                detail_results(app, item),
                input_mode="realtime",
                placeholder=item.title,
                context=context,
            )
    return await list_response(app, query)


@plugin.on_action
async def handle_action(item_id: str, action: str | None, context: str | None):
    return await handle_item_action(app, item_id, action, context)


@plugin.on_form_submitted
async def handle_form_submitted(form_data: dict, context: str | None):
    return await handle_form(app, form_data, context)


@plugin.on_shutdown
async def handle_shutdown():
    await app.totp.close()


def main():
    logging.basicConfig(
        level=logging.DEBUG if is_debug_enabled() else logging.INFO,
        stream=sys.stderr,
        format="[bitwarden] %(levelname)s %(name)s: %(message)s",
    )
    app.store.load()
    plugin.run()


if __name__ == "__main__":
    main()
