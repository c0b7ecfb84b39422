"""Scripted stdio tool provider for the transport tests.

Usage: python fake_provider.py [mode]

Modes:
    normal       answer initialize, tools/list and tools/call
    hang_init    never answer initialize
    bad_init     answer initialize with an unsupported protocol version
    eof_on_call  exit as soon as a tools/call arrives
    ignore_term  ignore SIGTERM
    spawn_child  start a long-lived child process in the same group
"""

from __future__ import annotations

import json
import signal
import subprocess
import sys

MODE = sys.argv[1] if len(sys.argv) > 1 else "normal"

TOOLS = [
    {
        "name": "take_snapshot",
        "description": "Take a text snapshot of the page",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "click",
        "description": "Click an element",
        "inputSchema": {
            "type": "object",
            "properties": {"uid": {"type": "string"}},
            "required": ["uid"],
        },
    },
    {"name": "echo", "inputSchema": {"type": "object", "properties": {"value": {"type": "string"}}}},
]


def send(message: dict) -> None:
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()


def result(request_id, payload: dict) -> None:
    send({"jsonrpc": "2.0", "id": request_id, "result": payload})


def text(request_id, body: str, is_error: bool = False) -> None:
    result(request_id, {"content": [{"type": "text", "text": body}], "isError": is_error})


def main() -> None:
    initialized = False
    init_params: dict = {}
    child = None
    if MODE == "ignore_term":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    if MODE == "spawn_child":
        child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(120)"])
    sys.stderr.write(f"fake provider started in {MODE} mode\n")
    sys.stderr.flush()

    while True:
        line = sys.stdin.readline()
        if not line:
            return
        line = line.strip()
        if not line:
            continue
        message = json.loads(line)
        method = message.get("method")
        request_id = message.get("id")
        params = message.get("params") or {}

        if method == "initialize":
            if MODE == "hang_init":
                continue
            if MODE == "bad_init":
                result(request_id, {
                    "protocolVersion": "1999-01-01",
                    "capabilities": {},
                    "serverInfo": {"name": "fake-provider", "version": "1.0"},
                })
                continue
            init_params = params
            result(request_id, {
                "protocolVersion": params.get("protocolVersion"),
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "fake-provider", "version": "1.0"},
            })
        elif method == "notifications/initialized":
            initialized = True
        elif method == "tools/list":
            result(request_id, {"tools": TOOLS})
        elif method == "tools/call":
            if MODE == "eof_on_call":
                return
            name = params.get("name")
            arguments = params.get("arguments")
            if name == "echo":
                text(request_id, json.dumps({
                    "arguments": arguments,
                    "initialized": initialized,
                    "init": init_params,
                }))
            elif name == "chatty":
                send({
                    "jsonrpc": "2.0",
                    "method": "notifications/message",
                    "params": {"level": "info", "data": "page loaded"},
                })
                sys.stdout.write("plain log line, not json\n")
                send({"jsonrpc": "2.0", "id": 9999, "result": {}})
                send({"jsonrpc": "2.0", "id": "srv-1", "method": "roots/list"})
                reply = json.loads(sys.stdin.readline())
                send({
                    "jsonrpc": "2.0",
                    "id": "srv-2",
                    "method": "sampling/createMessage",
                    "params": {"messages": [], "maxTokens": 16},
                })
                refused = json.loads(sys.stdin.readline())
                text(request_id, json.dumps({"roots": reply, "sampling": refused}))
            elif name == "child_pid":
                text(request_id, str(child.pid if child else 0))
            elif name == "fail":
                send({
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "error": {"code": -32602, "message": "Invalid params: uid is required"},
                })
            elif name == "is_error":
                text(request_id, "Element not found", is_error=True)
            elif name == "image":
                result(request_id, {"content": [
                    {"type": "image", "data": "AAAA", "mimeType": "image/png"},
                    {"type": "text", "text": "see data:image/png;base64,AAAABBBB="},
                ]})
            elif name == "hang":
                continue
            else:
                text(request_id, f"called {name}")
        elif request_id is not None:
            send({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32601, "message": "Method not found"}})


if __name__ == "__main__":
    main()
