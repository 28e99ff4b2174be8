#!/usr/bin/env python3
"""
Hamr Socket Plugin SDK

Connects a plugin to the hamr daemon and speaks JSON-RPC 2.0 over the
daemon's unix socket (4-byte big-endian length prefix per message).

Example usage:

    from hamr_sdk import HamrPlugin

    plugin = HamrPlugin(id="vault", name="Vault", icon="key")

    @plugin.on_search
    async def handle_search(query: str, context: str | None) -> dict:
        return HamrPlugin.results([{"id": "1", "name": "Result"}])

    @plugin.on_shutdown
    async def cleanup():
        ...

    plugin.run()
"""

import asyncio
import inspect
import json
import logging
import os
import signal
import struct
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger("hamr_sdk")


def get_socket_path() -> str:
    """Get the hamr daemon socket path.

    Prefers the dev socket (hamr-dev.sock) when it exists so plugins work
    against both dev and production daemons.
    """
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR", "/tmp")
    dev_socket = os.path.join(runtime_dir, "hamr-dev.sock")
    prod_socket = os.path.join(runtime_dir, "hamr.sock")

    if os.path.exists(dev_socket):
        return dev_socket
    return prod_socket


def is_debug_enabled() -> bool:
    """Check if debug logging is enabled via environment variable."""
    return os.environ.get("HAMR_PLUGIN_DEBUG", "").lower() in ("1", "true", "yes")


def encode_message(message: dict) -> bytes:
    """Frame a message as a 4-byte big-endian length plus UTF-8 JSON."""
    data = json.dumps(message).encode("utf-8")
    return struct.pack(">I", len(data)) + data


@dataclass
class PluginManifest:
    """Plugin manifest for registration."""

    id: str
    name: str
    description: Optional[str] = None
    icon: Optional[str] = None
    prefix: Optional[str] = None
    priority: int = 0

    def to_dict(self) -> dict:
        result = {
            "id": self.id,
            "name": self.name,
            "priority": self.priority,
        }
        if self.description:
            result["description"] = self.description
        if self.icon:
            result["icon"] = self.icon
        if self.prefix:
            result["prefix"] = self.prefix
        return result


class HamrPlugin:
    """
    Socket-based hamr plugin.

    Handles connection, registration, and message routing.
    """

    def __init__(
        self,
        id: str,
        name: str,
        description: Optional[str] = None,
        icon: Optional[str] = None,
        prefix: Optional[str] = None,
        priority: int = 0,
        socket_path: Optional[str] = None,
    ):
        self.manifest = PluginManifest(
            id=id,
            name=name,
            description=description,
            icon=icon,
            prefix=prefix,
            priority=priority,
        )
        self.socket_path = socket_path or get_socket_path()

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._request_id = 0

        self._on_initial: Optional[Callable] = None
        self._on_search: Optional[Callable] = None
        self._on_action: Optional[Callable] = None
        self._on_form_submitted: Optional[Callable] = None
        self._on_shutdown: Optional[Callable] = None

        self._shutdown = False

    def on_initial(self, handler: Callable):
        """Decorator for initial request handler."""
        self._on_initial = handler
        return handler

    def on_search(self, handler: Callable):
        """Decorator for search request handler."""
        self._on_search = handler
        return handler

    def on_action(self, handler: Callable):
        """Decorator for action request handler."""
        self._on_action = handler
        return handler

    def on_form_submitted(self, handler: Callable):
        """Decorator for form submission handler."""
        self._on_form_submitted = handler
        return handler

    def on_shutdown(self, handler: Callable):
        """Decorator for a coroutine run once before the connection closes."""
        self._on_shutdown = handler
        return handler

    async def connect(self) -> None:
        """Connect to the hamr daemon socket."""
        logger.debug("Connecting to %s", self.socket_path)
        self._reader, self._writer = await asyncio.open_unix_connection(
            self.socket_path
        )

    async def register(self) -> dict:
        """Register this plugin with the daemon."""
        response = await self._send_request(
            "register",
            {
                "role": {
                    "type": "plugin",
                    "id": self.manifest.id,
                    "manifest": self.manifest.to_dict(),
                }
            },
        )
        logger.debug("Registered as %s", self.manifest.id)
        return response

    async def send_update(self, patches: list[dict]) -> None:
        """Send partial result updates (each patch carries the item id)."""
        await self._send_notification("plugin_update", {"patches": patches})

    # ========== Response Builders ==========

    @staticmethod
    def results(
        items: list[dict],
        *,
        input_mode: Optional[str] = None,
        context: Optional[str] = None,
        placeholder: Optional[str] = None,
        clear_input: bool = False,
        navigate_forward: Optional[bool] = None,
        plugin_actions: Optional[list[dict]] = None,
    ) -> dict:
        """Build a results response.

        Args:
            items: List of result items
            navigate_forward: Push a new view instead of replacing the current one
        """
        response: dict[str, Any] = {"type": "results", "results": items}
        if input_mode:
            response["inputMode"] = input_mode
        if context:
            response["context"] = context
        if placeholder:
            response["placeholder"] = placeholder
        if clear_input:
            response["clearInput"] = clear_input
        if navigate_forward is not None:
            response["navigateForward"] = navigate_forward
        if plugin_actions:
            response["pluginActions"] = plugin_actions
        return response

    @staticmethod
    def form(
        form: dict,
        *,
        context: Optional[str] = None,
    ) -> dict:
        """Build a form response."""
        response: dict[str, Any] = {"type": "form", "form": form}
        if context:
            response["context"] = context
        return response

    @staticmethod
    def card(
        title: str,
        *,
        content: Optional[str] = None,
        markdown: Optional[str] = None,
        actions: Optional[list[dict]] = None,
        context: Optional[str] = None,
    ) -> dict:
        """Build a card response.

        Card data is nested under a 'card' key:
        {"type": "card", "card": {...}, "context": ...}
        """
        card_data: dict[str, Any] = {"title": title}
        if content:
            card_data["content"] = content
        if markdown:
            card_data["markdown"] = markdown
        if actions:
            card_data["actions"] = actions

        response: dict[str, Any] = {"type": "card", "card": card_data}
        if context:
            response["context"] = context
        return response

    @staticmethod
    def copy_and_close(text: str) -> dict:
        """Build a copy-and-close response."""
        return {"type": "execute", "copy": text, "close": True}

    @staticmethod
    def open_url(url: str, *, close: bool = True) -> dict:
        """Build an open-url response."""
        return {"type": "execute", "openUrl": url, "close": close}

    @staticmethod
    def noop() -> dict:
        """Build a no-op response (execute with no actions)."""
        return {"type": "execute"}

    @staticmethod
    def error(message: str, *, details: str | None = None) -> dict:
        """Build an error response."""
        result = {"type": "error", "message": message}
        if details:
            result["details"] = details
        return result

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    async def _send_request(self, method: str, params: dict) -> dict:
        """Send a request and wait for response."""
        request_id = self._next_id()
        await self._write_message(
            {"jsonrpc": "2.0", "method": method, "params": params, "id": request_id}
        )

        # The message loop is not running yet during registration
        response = await self._read_message()
        if response is None:
            raise RuntimeError(f"No response received for request {request_id}")
        if "error" in response:
            raise RuntimeError(response["error"].get("message", "Unknown error"))
        return response.get("result", {})

    async def _send_notification(self, method: str, params: dict) -> None:
        """Send a notification (no response expected)."""
        await self._write_message(
            {"jsonrpc": "2.0", "method": method, "params": params}
        )

    async def _write_message(self, message: dict) -> None:
        """Write a length-prefixed JSON message."""
        if not self._writer:
            raise RuntimeError("Not connected")
        # Payloads may carry credentials, only the envelope is traced
        logger.debug("-> %s", message.get("method") or f"response {message.get('id')}")
        self._writer.write(encode_message(message))
        await self._writer.drain()

    async def _read_message(self) -> Optional[dict]:
        """Read a length-prefixed JSON message."""
        if not self._reader:
            return None

        try:
            length_bytes = await self._reader.readexactly(4)
            length = struct.unpack(">I", length_bytes)[0]
            data = await self._reader.readexactly(length)
            return json.loads(data.decode("utf-8"))
        except asyncio.IncompleteReadError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("Read error: %s", e)
            return None

    async def _handle_message(self, message: dict) -> None:
        """Handle an incoming message."""
        method = message.get("method", "")
        params = message.get("params") or {}
        request_id = message.get("id")
        logger.debug("<- %s", method or f"response {request_id}")

        result = None

        if method == "initial":
            if self._on_initial:
                result = await self._call_handler(self._on_initial, params)

        elif method == "search":
            if self._on_search:
                result = await self._call_handler(
                    self._on_search, params.get("query", ""), params.get("context")
                )

        elif method == "action":
            if self._on_action:
                result = await self._call_handler(
                    self._on_action,
                    params.get("item_id", ""),
                    params.get("action"),
                    params.get("context"),
                )

        elif method == "form_submitted":
            if self._on_form_submitted:
                result = await self._call_handler(
                    self._on_form_submitted,
                    params.get("form_data", {}),
                    params.get("context"),
                )

        if request_id is not None:
            await self._write_message(
                {"jsonrpc": "2.0", "result": result or {}, "id": request_id}
            )

    async def _call_handler(self, handler: Callable, *args) -> Any:
        """Call a handler, supporting both sync and async handlers.

        Passes only as many args as the handler's signature accepts, so
        handlers may ignore trailing parameters such as context.
        """
        try:
            max_params = len(inspect.signature(handler).parameters)
            args = args[:max_params]
        except (ValueError, TypeError):
            pass

        result = handler(*args)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    async def _message_loop(self) -> None:
        """Main message handling loop."""
        while not self._shutdown:
            message = await self._read_message()
            if message is None:
                logger.debug("Connection closed")
                break

            try:
                await self._handle_message(message)
            except Exception:
                logger.exception("Handler error")

    async def _run_async(self) -> None:
        """Run the plugin (async version)."""
        loop = asyncio.get_running_loop()

        def shutdown():
            self._shutdown = True

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, shutdown)

        try:
            await self.connect()
            await self.register()
            await self._message_loop()
        except OSError as e:
            logger.error("Connection to %s failed: %s", self.socket_path, e)
        finally:
            if self._on_shutdown:
                await self._call_handler(self._on_shutdown)
            if self._writer:
                self._writer.close()
                await self._writer.wait_closed()

    def run(self) -> None:
        """Run the plugin (blocking)."""
        asyncio.run(self._run_async())
