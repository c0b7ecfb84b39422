"""Tool provider client on the MCP Python SDK.

The provider (``chrome-devtools-mcp`` by default) is spawned by
``mcp.client.stdio.stdio_client``, which starts it in its own session, and
driven through ``mcp.ClientSession``, which owns the JSON-RPC framing, the
``initialize`` handshake and answers to ``ping``. This module adds the
run-level contract on top: one request in flight at a time, typed errors,
a transport that stays broken after a stream failure, and teardown of the
provider's whole process group, browsers included.

Usage:
    async with ProviderClient(settings) as client:
        registry = await client.list_capabilities()
        result = await client.invoke("take_snapshot", {})
        print(result.text)
"""

from __future__ import annotations

import asyncio
import atexit
import json
import logging
import os
import re
import signal
import subprocess
import sys
import weakref
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import anyio
from mcp import ClientSession, types
from mcp.client.stdio import StdioServerParameters, stdio_client
from mcp.shared.exceptions import McpError

from mcp_e2e.config import ProviderSettings
from mcp_e2e.errors import ProtocolError, ProviderConnectionError, TransportError
from mcp_e2e.registry import CapabilityRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Error code the SDK hands to pending requests when the read stream ends.
_CONNECTION_CLOSED = -32000

_STREAM_ERRORS = (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream)

_IS_WINDOWS = sys.platform == "win32"

_INLINE_IMAGE_RE = re.compile(r"data:image/[A-Za-z0-9.+-]+;base64,[A-Za-z0-9+/=\s]+")

_BROWSER_PROCESS_NAMES = ("chrome", "google-chrome", "chromium", "chromium-browser")


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class ToolResult:
    """Decoded ``tools/call`` result."""

    content: list[dict[str, Any]] = field(default_factory=list)
    is_error: bool = False
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_wire(cls, result: dict[str, Any]) -> "ToolResult":
        content = result.get("content")
        items = [c for c in content if isinstance(c, dict)] if isinstance(content, list) else []
        return cls(content=items, is_error=bool(result.get("isError")), raw=result)

    @classmethod
    def from_call_result(cls, result: types.CallToolResult) -> "ToolResult":
        return cls.from_wire(result.model_dump(mode="json", by_alias=True, exclude_none=True))

    @property
    def text(self) -> str:
        """Text items joined by newline. Binary payloads are replaced by placeholders."""
        parts: list[str] = []
        for item in self.content:
            kind = item.get("type")
            if kind == "text":
                parts.append(strip_inline_images(str(item.get("text", ""))))
            elif kind == "image":
                parts.append(f"[image omitted: {item.get('mimeType', 'image')}]")
            elif kind == "resource":
                parts.append(_resource_text(item.get("resource")))
            elif kind == "resource_link":
                parts.append(f"[resource link: {item.get('uri', '')}]")
            else:
                parts.append(strip_inline_images(json.dumps(item, default=str)))
        return "\n".join(parts)


def _resource_text(resource: Any) -> str:
    if isinstance(resource, dict):
        if "text" in resource:
            return strip_inline_images(str(resource["text"]))
        return f"[resource omitted: {resource.get('uri', '')}]"
    return f"[resource omitted: {resource or ''}]"


def strip_inline_images(text: str) -> str:
    """Replace base64 data URIs with a short marker."""
    if "data:image" not in text:
        return text
    return _INLINE_IMAGE_RE.sub("[base64 image omitted]", text)


# ---------------------------------------------------------------------------
# Server-initiated requests
# ---------------------------------------------------------------------------


async def _list_roots(context: Any) -> types.ListRootsResult:
    return types.ListRootsResult(roots=[])


async def _refuse_sampling(context: Any, params: types.CreateMessageRequestParams) -> types.ErrorData:
    return types.ErrorData(code=types.METHOD_NOT_FOUND, message="Sampling is not supported")


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class ProviderClient:
    """Supervises one tool provider subprocess over an MCP client session.

    ``close()`` is idempotent and never raises. An ``atexit`` hook kills the
    process group if the interpreter exits while the client is still open.
    """

    def __init__(self, settings: ProviderSettings | None = None) -> None:
        self.settings = settings or ProviderSettings()
        self._stack: AsyncExitStack | None = None
        self._session: ClientSession | None = None
        self._pid: int | None = None
        self._lock = asyncio.Lock()
        self._broken: str | None = None
        self._closed = False
        self.server_info: dict[str, Any] = {}

    async def __aenter__(self) -> "ProviderClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    @property
    def is_connected(self) -> bool:
        return self._session is not None and not self._closed and self._broken is None

    @property
    def pid(self) -> int | None:
        """Provider process id, also its process group id. None when unknown."""
        return self._pid

    async def connect(self) -> None:
        """Spawn the provider and complete the initialize handshake.

        Raises:
            ProviderConnectionError: spawn failed, handshake timed out or was rejected.
        """
        if self.is_connected:
            return
        if self._closed:
            raise ProviderConnectionError("Provider client already closed")

        params = StdioServerParameters(
            command=self.settings.command,
            args=list(self.settings.args),
            env=dict(self.settings.env) if self.settings.env else None,
        )
        cmd = " ".join([params.command, *params.args])
        self._stack = AsyncExitStack()

        logger.info("Starting tool provider: %s", cmd)
        try:
            async with _spawn_lock():
                before = await asyncio.to_thread(_child_pids)
                read_stream, write_stream = await self._stack.enter_async_context(stdio_client(params))
                self._pid = _new_child(before, await asyncio.to_thread(_child_pids))
        except Exception as exc:
            await self.close()
            raise ProviderConnectionError(
                f"Failed to start tool provider {params.command!r}: {exc}", original=exc,
            ) from exc
        atexit.register(self._kill_sync)

        session = await self._stack.enter_async_context(
            ClientSession(
                read_stream,
                write_stream,
                client_info=types.Implementation(
                    name=self.settings.client_name, version=self.settings.client_version,
                ),
                list_roots_callback=_list_roots,
                sampling_callback=_refuse_sampling,
            )
        )
        try:
            init = await asyncio.wait_for(session.initialize(), timeout=self.settings.init_timeout_s)
        except asyncio.TimeoutError as exc:
            await self.close()
            raise ProviderConnectionError(
                f"Tool provider did not answer initialize within {self.settings.init_timeout_s}s",
                original=exc,
            ) from exc
        except Exception as exc:
            await self.close()
            raise ProviderConnectionError(f"Tool provider handshake failed: {exc}", original=exc) from exc

        self._session = session
        self.server_info = init.serverInfo.model_dump(mode="json", exclude_none=True)
        logger.info(
            "Tool provider ready (pid=%s, server=%s, protocol=%s)",
            self._pid, self.server_info.get("name", "unknown"), init.protocolVersion,
        )

    async def list_capabilities(self) -> CapabilityRegistry:
        """Fetch the provider's tool descriptors (``tools/list``)."""
        result = await self._request("tools/list", lambda session: session.list_tools())
        registry = CapabilityRegistry.from_wire(
            tool.model_dump(mode="json", by_alias=True, exclude_none=True) for tool in result.tools
        )
        logger.info("Provider exposes %d tools", len(registry))
        return registry

    async def invoke(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Call one tool (``tools/call``). Not retried here.

        Raises:
            TransportError: stream closed, broken, or response timed out.
            ProtocolError: provider answered with an error envelope.
        """
        logger.debug("tools/call %s %s", name, _preview(arguments))
        result = await self._request(
            f"tools/call {name}", lambda session: session.call_tool(name, arguments),
        )
        return ToolResult.from_call_result(result)

    async def _request(self, label: str, call: Callable[[ClientSession], Awaitable[T]]) -> T:
        async with self._lock:
            session = self._usable_session()
            try:
                return await asyncio.wait_for(call(session), timeout=self.settings.request_timeout_s)
            except asyncio.TimeoutError as exc:
                self._broken = f"no response to {label} within {self.settings.request_timeout_s}s"
                raise TransportError(f"Tool provider {self._broken}", original=exc) from exc
            except McpError as exc:
                if exc.error.code == _CONNECTION_CLOSED:
                    self._broken = "output stream closed"
                    raise TransportError("Tool provider closed its output stream", original=exc) from exc
                raise ProtocolError(exc.error.message, code=exc.error.code, original=exc) from exc
            except _STREAM_ERRORS as exc:
                self._broken = "output stream closed"
                raise TransportError("Tool provider closed its output stream", original=exc) from exc

    def _usable_session(self) -> ClientSession:
        if self._closed or self._session is None:
            raise TransportError("Tool provider is not connected")
        if self._broken is not None:
            raise TransportError(f"Tool provider stream unusable: {self._broken}")
        return self._session

    # -- teardown -------------------------------------------------------------

    async def close(self) -> None:
        """Stop the provider and its whole process group. Safe to call repeatedly."""
        if self._closed and self._stack is None:
            return
        self._closed = True
        self._session = None
        stack, self._stack = self._stack, None
        pid, self._pid = self._pid, None
        try:
            if pid is not None:
                _signal_group(pid, signal.SIGTERM)
            if stack is not None:
                await stack.aclose()
            if pid is not None:
                await self._reap_group(pid)
        except Exception:
            logger.warning("Error while stopping tool provider", exc_info=True)
        finally:
            atexit.unregister(self._kill_sync)
        if pid is not None:
            logger.info("Tool provider stopped (pid=%d)", pid)

        if self.settings.kill_browser_processes:
            await asyncio.to_thread(kill_browser_processes)

    async def _reap_group(self, pgid: int) -> None:
        # Children of the provider may outlive the leader; the group id survives them.
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.shutdown_grace_s
        while _group_alive(pgid) and loop.time() < deadline:
            await asyncio.sleep(0.05)
        if _group_alive(pgid):
            logger.warning("Tool provider group %d outlived SIGTERM; killing it", pgid)
            _signal_group(pgid, signal.SIGKILL)

    def _kill_sync(self) -> None:
        """Interpreter-exit hook: kill the group without an event loop."""
        if self._pid is not None:
            _signal_group(self._pid, signal.SIGKILL)


# ---------------------------------------------------------------------------
# Process helpers
# ---------------------------------------------------------------------------

_spawn_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock]" = (
    weakref.WeakKeyDictionary()
)


def _spawn_lock() -> asyncio.Lock:
    """Serializes spawns on the running loop so each new child is attributed to one client."""
    loop = asyncio.get_running_loop()
    lock = _spawn_locks.get(loop)
    if lock is None:
        lock = _spawn_locks[loop] = asyncio.Lock()
    return lock


def _child_pids() -> set[int]:
    """Direct children of this interpreter (empty on Windows)."""
    if _IS_WINDOWS:
        return set()
    me = str(os.getpid())
    proc = Path("/proc")
    if proc.is_dir():
        children: set[int] = set()
        for entry in proc.iterdir():
            if not entry.name.isdigit():
                continue
            try:
                stat = (entry / "stat").read_text()
            except OSError:
                continue
            # fields after "(comm)": state, ppid, ...
            fields = stat.rsplit(")", 1)[-1].split()
            if len(fields) > 1 and fields[1] == me:
                children.add(int(entry.name))
        return children
    try:
        out = subprocess.run(["pgrep", "-P", me], capture_output=True, text=True, check=False)
    except OSError:
        return set()
    return {int(p) for p in out.stdout.split() if p.isdigit()}


def _new_child(before: set[int], after: set[int]) -> int | None:
    spawned = after - before
    if len(spawned) == 1:
        return spawned.pop()
    logger.debug("Could not identify the provider pid (candidates: %s)", sorted(spawned))
    return None


def _signal_group(pgid: int, sig: int) -> None:
    if _IS_WINDOWS:
        return
    try:
        os.killpg(pgid, sig)
    except (ProcessLookupError, PermissionError):
        pass


def _group_alive(pgid: int) -> bool:
    if _IS_WINDOWS:
        return False
    try:
        os.killpg(pgid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def kill_browser_processes() -> None:
    """Kill every browser process on the machine. Unsafe when runs share a host."""
    logger.warning("Killing all browser processes")
    if _IS_WINDOWS:
        subprocess.run(
            ["taskkill", "/F", "/IM", "chrome.exe", "/T"],
            check=False, capture_output=True,
        )
        return
    for name in _BROWSER_PROCESS_NAMES:
        subprocess.run(["pkill", "-x", name], check=False, capture_output=True)


def _preview(value: Any, limit: int = 200) -> str:
    text = json.dumps(value, default=str)
    return text if len(text) <= limit else text[:limit] + "..."
