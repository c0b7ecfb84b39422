"""Tests for mcp_e2e.transport against a scripted stdio provider (tests/fake_provider.py).

Tests cover:
- initialize handshake, initialized notification, tools/list
- tools/call results, error envelopes, isError results, binary payloads
- notifications, stray lines and server requests between responses
- EOF and request timeout make the transport unusable
- spawn and handshake failures surface as ProviderConnectionError
- close() is idempotent and kills the whole process group
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from pathlib import Path

import pytest
from mcp import types

from mcp_e2e.config import ProviderSettings
from mcp_e2e.errors import ProtocolError, ProviderConnectionError, TransportError
from mcp_e2e.transport import ProviderClient, ToolResult, strip_inline_images

FAKE_PROVIDER = Path(__file__).parent / "fake_provider.py"

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX")


def _settings(mode: str = "normal", **overrides: object) -> ProviderSettings:
    values: dict[str, object] = {
        "command": sys.executable,
        "args": (str(FAKE_PROVIDER), mode),
        "init_timeout_s": 10.0,
        "request_timeout_s": 10.0,
        "shutdown_grace_s": 1.0,
    }
    values.update(overrides)
    return ProviderSettings(**values)  # type: ignore[arg-type]


def _alive(pid: int) -> bool:
    """True while *pid* exists and is not a zombie."""
    if Path("/proc/self").exists():
        try:
            stat = Path(f"/proc/{pid}/stat").read_text()
        except OSError:
            return False
        return stat.rsplit(")", 1)[1].split()[0] != "Z"
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


async def _wait_dead(pid: int, timeout: float = 5.0) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if not _alive(pid):
            return True
        await asyncio.sleep(0.05)
    return not _alive(pid)


# ---------------------------------------------------------------------------
# ToolResult
# ---------------------------------------------------------------------------


class TestToolResult:
    def test_from_wire(self) -> None:
        result = ToolResult.from_wire({"content": [{"type": "text", "text": "a"}, "junk"], "isError": True})
        assert result.is_error
        assert result.content == [{"type": "text", "text": "a"}]

    def test_text_joins_and_replaces_binary(self) -> None:
        result = ToolResult(content=[
            {"type": "text", "text": "line one"},
            {"type": "image", "data": "AAAA", "mimeType": "image/png"},
            {"type": "resource", "resource": {"uri": "file:///a.txt", "text": "inline"}},
            {"type": "resource", "resource": {"uri": "file:///b.bin", "blob": "AAAA"}},
        ])
        assert result.text.split("\n") == [
            "line one",
            "[image omitted: image/png]",
            "inline",
            "[resource omitted: file:///b.bin]",
        ]

    def test_non_mapping_resource(self) -> None:
        result = ToolResult.from_wire({"content": [{"type": "resource", "resource": "file:///snap.txt"}]})
        assert result.text == "[resource omitted: file:///snap.txt]"

    def test_from_call_result(self) -> None:
        call_result = types.CallToolResult(
            content=[types.TextContent(type="text", text="done")], isError=True,
        )
        result = ToolResult.from_call_result(call_result)
        assert result.is_error
        assert result.text == "done"
        assert result.raw["isError"] is True

    def test_strip_inline_images(self) -> None:
        assert strip_inline_images("x data:image/png;base64,iVBORw0KGgo= y") == "x [base64 image omitted] y"
        assert strip_inline_images("plain") == "plain"


# ---------------------------------------------------------------------------
# Handshake and calls
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestProviderClient:
    async def test_handshake_and_list(self) -> None:
        async with ProviderClient(_settings()) as client:
            assert client.is_connected
            assert client.server_info["name"] == "fake-provider"
            registry = await client.list_capabilities()
            assert registry.names == ["take_snapshot", "click", "echo"]
            assert registry.schema_for("click")["required"] == ["uid"]  # type: ignore[index]
        assert not client.is_connected

    async def test_initialize_params_and_notification(self) -> None:
        async with ProviderClient(_settings()) as client:
            result = await client.invoke("echo", {"value": "hi"})
        payload = json.loads(result.text)
        assert payload["arguments"] == {"value": "hi"}
        assert payload["initialized"] is True
        assert payload["init"]["protocolVersion"] == types.LATEST_PROTOCOL_VERSION
        capabilities = payload["init"]["capabilities"]
        assert capabilities["roots"] == {"listChanged": True}
        assert "sampling" in capabilities
        assert payload["init"]["clientInfo"] == {"name": "mcp-e2e-tests", "version": "0.1.0"}

    async def test_sequential_calls_pair_correctly(self) -> None:
        async with ProviderClient(_settings()) as client:
            for i in range(5):
                result = await client.invoke("echo", {"value": str(i)})
                assert json.loads(result.text)["arguments"] == {"value": str(i)}

    async def test_concurrent_calls_are_serialized(self) -> None:
        async with ProviderClient(_settings()) as client:
            results = await asyncio.gather(*(client.invoke("echo", {"value": str(i)}) for i in range(4)))
        assert [json.loads(r.text)["arguments"]["value"] for r in results] == ["0", "1", "2", "3"]

    async def test_error_envelope_is_protocol_error(self) -> None:
        async with ProviderClient(_settings()) as client:
            with pytest.raises(ProtocolError) as exc_info:
                await client.invoke("fail", {})
            assert exc_info.value.code == -32602
            assert "uid is required" in str(exc_info.value)
            # connection survives an error envelope
            assert (await client.invoke("click", {"uid": "1_1"})).text == "called click"

    async def test_is_error_result_returned(self) -> None:
        async with ProviderClient(_settings()) as client:
            result = await client.invoke("is_error", {})
        assert result.is_error
        assert result.text == "Element not found"

    async def test_binary_content_not_in_text(self) -> None:
        async with ProviderClient(_settings()) as client:
            result = await client.invoke("image", {})
        assert "AAAA" not in result.text
        assert "[image omitted: image/png]" in result.text
        assert "[base64 image omitted]" in result.text

    async def test_skips_noise_and_answers_server_requests(self) -> None:
        async with ProviderClient(_settings()) as client:
            result = await client.invoke("chatty", {})
            payload = json.loads(result.text)
            assert payload["roots"]["id"] == "srv-1"
            assert payload["roots"]["result"] == {"roots": []}
            assert payload["sampling"]["id"] == "srv-2"
            assert payload["sampling"]["error"]["code"] == -32601
            assert (await client.invoke("click", {"uid": "1_1"})).text == "called click"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestProviderFailures:
    async def test_spawn_failure(self) -> None:
        client = ProviderClient(ProviderSettings(command="/nonexistent/mcp-provider-binary", args=()))
        with pytest.raises(ProviderConnectionError, match="Failed to start"):
            await client.connect()
        assert not client.is_connected
        await client.close()

    async def test_handshake_timeout(self) -> None:
        client = ProviderClient(_settings("hang_init", init_timeout_s=0.5))
        with pytest.raises(ProviderConnectionError, match="initialize"):
            await client.connect()
        assert client.pid is None

    async def test_unsupported_protocol_version(self) -> None:
        client = ProviderClient(_settings("bad_init"))
        with pytest.raises(ProviderConnectionError, match="handshake failed"):
            await client.connect()
        assert not client.is_connected

    async def test_eof_makes_transport_unusable(self) -> None:
        async with ProviderClient(_settings("eof_on_call", request_timeout_s=5.0)) as client:
            with pytest.raises(TransportError):
                await client.invoke("click", {"uid": "1_1"})
            assert not client.is_connected
            with pytest.raises(TransportError, match="unusable"):
                await client.invoke("click", {"uid": "1_1"})

    async def test_request_timeout_breaks_transport(self) -> None:
        async with ProviderClient(_settings(request_timeout_s=0.3)) as client:
            with pytest.raises(TransportError, match="no response"):
                await client.invoke("hang", {})
            with pytest.raises(TransportError):
                await client.invoke("echo", {})

    async def test_invoke_before_connect(self) -> None:
        with pytest.raises(TransportError, match="not connected"):
            await ProviderClient(_settings()).invoke("echo", {})

    async def test_connect_after_close_refused(self) -> None:
        client = ProviderClient(_settings())
        await client.connect()
        await client.close()
        with pytest.raises(ProviderConnectionError, match="already closed"):
            await client.connect()


# ---------------------------------------------------------------------------
# Teardown
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestTeardown:
    async def test_close_is_idempotent(self) -> None:
        client = ProviderClient(_settings())
        await client.connect()
        pid = client.pid
        assert pid is not None
        await client.close()
        await client.close()
        assert await _wait_dead(pid)

    async def test_close_never_connected(self) -> None:
        await ProviderClient(_settings()).close()

    @posix_only
    async def test_kills_process_group(self) -> None:
        client = ProviderClient(_settings("spawn_child"))
        await client.connect()
        child_pid = int((await client.invoke("child_pid", {})).text)
        assert child_pid > 0
        assert _alive(child_pid)
        await client.close()
        assert await _wait_dead(child_pid)

    @posix_only
    async def test_escalates_when_sigterm_ignored(self) -> None:
        client = ProviderClient(_settings("ignore_term", shutdown_grace_s=0.3))
        await client.connect()
        pid = client.pid
        assert pid is not None
        await client.close()
        assert await _wait_dead(pid)

    @posix_only
    async def test_exit_hook_kills_then_close_still_safe(self) -> None:
        client = ProviderClient(_settings())
        await client.connect()
        pid = client.pid
        assert pid is not None
        client._kill_sync()
        assert await _wait_dead(pid)
        await client.close()
