"""Schema-driven argument repair for AI-proposed tool calls.

Models routinely send ``"true"`` for booleans, ``"500"`` for integers, JSON
text for arrays, or wrap the real arguments in a ``params``/``arguments``
envelope. ``ArgumentNormalizer.normalize`` fixes what the tool's declared
schema makes unambiguous and leaves everything else alone. It never raises
and never mutates its input.
"""

from __future__ import annotations

import copy
import json
import logging
from typing import Any

from mcp_e2e.config import EngineSettings, ToolNames
from mcp_e2e.registry import CapabilityRegistry

logger = logging.getLogger(__name__)

ENVELOPE_KEYS: tuple[str, ...] = ("params", "arguments")
"""Keys models use to wrap the real arguments one level down."""

DEFAULT_WAIT_FUNCTION = "() => new Promise(r => setTimeout(r, 2000))"
"""Script used when an evaluate call arrives without one."""

_MAX_ENVELOPE_DEPTH = 3


def _schema_types(schema: dict[str, Any]) -> set[str]:
    raw = schema.get("type")
    if isinstance(raw, str):
        return {raw}
    if isinstance(raw, list):
        return {t for t in raw if isinstance(t, str)}
    if isinstance(schema.get("properties"), dict):
        return {"object"}
    if isinstance(schema.get("items"), dict):
        return {"array"}
    return set()


def _parse_number(text: str) -> int | float | None:
    stripped = text.strip()
    if not stripped:
        return None
    try:
        if "." in stripped or "e" in stripped.lower():
            value = float(stripped)
            if value != value or value in (float("inf"), float("-inf")):
                return None
            return value
        return int(stripped)
    except ValueError:
        return None


def _coerce_string(value: str, types: set[str]) -> Any:
    if not types or "string" in types:
        return value
    if "boolean" in types:
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    if "integer" in types or "number" in types:
        number = _parse_number(value)
        if number is not None:
            if "integer" in types and isinstance(number, float) and number.is_integer():
                return int(number)
            return number
    if "array" in types or "object" in types:
        stripped = value.strip()
        if stripped[:1] in ("[", "{"):
            try:
                parsed = json.loads(stripped)
            except json.JSONDecodeError:
                return value
            if isinstance(parsed, list) and "array" in types:
                return parsed
            if isinstance(parsed, dict) and "object" in types:
                return parsed
    return value


def coerce_value(value: Any, schema: Any) -> Any:
    """Coerce *value* toward *schema*. Unparsable or already-typed values pass through."""
    if not isinstance(schema, dict):
        return value
    types = _schema_types(schema)

    if isinstance(value, str):
        value = _coerce_string(value, types)

    if isinstance(value, float) and not isinstance(value, bool):
        if "integer" in types and "number" not in types and value.is_integer():
            value = int(value)
    elif isinstance(value, list) and "array" in types:
        items = schema.get("items")
        if isinstance(items, dict):
            value = [coerce_value(item, items) for item in value]
    elif isinstance(value, dict) and "object" in types:
        props = schema.get("properties")
        if isinstance(props, dict):
            value = {
                key: coerce_value(item, props[key]) if key in props else item
                for key, item in value.items()
            }
    return value


def flatten_envelope(arguments: dict[str, Any], declared: set[str]) -> dict[str, Any]:
    """Lift ``params``/``arguments`` envelopes into the top level.

    Existing top-level keys win. Keys the schema declares are never treated
    as envelopes, and a stray ``id`` is dropped unless declared.
    """
    args = dict(arguments)
    for _ in range(_MAX_ENVELOPE_DEPTH):
        lifted = False
        for key in ENVELOPE_KEYS:
            if key in declared or key not in args:
                continue
            inner = args[key]
            if isinstance(inner, str):
                try:
                    inner = json.loads(inner)
                except json.JSONDecodeError:
                    continue
            if not isinstance(inner, dict):
                continue
            del args[key]
            for inner_key, inner_value in inner.items():
                args.setdefault(inner_key, inner_value)
            lifted = True
        if not lifted:
            break
    if "id" in args and "id" not in declared:
        del args["id"]
    return args


def clamp_timeout(value: Any, minimum_ms: int, default_ms: int) -> int:
    """Absent, non-positive or unparsable -> default; below minimum -> minimum."""
    if isinstance(value, bool):
        return default_ms
    if isinstance(value, str):
        value = _parse_number(value)
    if not isinstance(value, (int, float)) or value <= 0:
        return default_ms
    if value < minimum_ms:
        return minimum_ms
    return int(value)


class ArgumentNormalizer:
    """Repairs tool arguments against the registry's schemas."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        settings: EngineSettings | None = None,
        tools: ToolNames | None = None,
    ) -> None:
        self.registry = registry
        self.settings = settings or EngineSettings()
        self.tools = tools or ToolNames()

    def normalize(
        self,
        tool_name: str,
        raw_arguments: Any,
        *,
        target_url: str | None = None,
    ) -> dict[str, Any]:
        """Return a repaired copy of *raw_arguments* for *tool_name*."""
        arguments = _as_mapping(raw_arguments)
        try:
            return self._normalize(tool_name, arguments, target_url)
        except Exception:
            logger.warning("Argument normalization failed for %s; passing through", tool_name, exc_info=True)
            return arguments

    def _normalize(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        target_url: str | None,
    ) -> dict[str, Any]:
        schema = self.registry.schema_for(tool_name) or {}
        props = schema.get("properties") if isinstance(schema.get("properties"), dict) else {}
        declared = set(props)

        args = flatten_envelope(arguments, declared)
        args = {
            key: coerce_value(value, props[key]) if key in props else value
            for key, value in args.items()
        }

        tools = self.tools
        if tool_name == tools.navigate:
            self._navigation_defaults(args, target_url)
        elif tool_name == tools.evaluate:
            self._evaluate_defaults(args, declared)
        elif tool_name == tools.wait:
            if isinstance(args.get("text"), str):
                args["text"] = args["text"].strip()
        elif tool_name == tools.fill:
            args["value"] = _as_text(args.get("value"))
        elif tool_name == tools.fill_form:
            args["elements"] = _form_elements(args.get("elements"))

        if "timeout" in declared:
            args["timeout"] = clamp_timeout(
                args.get("timeout"),
                self.settings.min_timeout_ms,
                self.settings.default_timeout_ms,
            )
        return args

    def _navigation_defaults(self, args: dict[str, Any], target_url: str | None) -> None:
        url = args.get("url")
        if (url is None or (isinstance(url, str) and not url.strip())) and target_url:
            args["url"] = target_url
        elif url is not None and not isinstance(url, str):
            args["url"] = str(url)
        args.setdefault("type", "url")
        args.setdefault("ignoreCache", False)
        args.setdefault("timeout", self.settings.default_timeout_ms)

    def _evaluate_defaults(self, args: dict[str, Any], declared: set[str]) -> None:
        function = args.get("function")
        if not isinstance(function, str) or not function.strip():
            expression = args.get("expression")
            if isinstance(expression, str) and expression.strip():
                args["function"] = expression
            else:
                args["function"] = DEFAULT_WAIT_FUNCTION
        for stray in ("expression", "type", "ignoreCache"):
            if stray not in declared:
                args.pop(stray, None)
        if "args" in args:
            args["args"] = _as_list(args["args"])


def _as_mapping(raw: Any) -> dict[str, Any]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return {}
    if not isinstance(raw, dict):
        return {}
    return copy.deepcopy(raw)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return value if isinstance(value, str) else str(value)


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if stripped.startswith("["):
            try:
                parsed = json.loads(stripped)
            except json.JSONDecodeError:
                return [value]
            if isinstance(parsed, list):
                return parsed
        return [value]
    return [value]


def _form_elements(value: Any) -> list[dict[str, Any]]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return []
    if isinstance(value, dict):
        value = [value]
    if not isinstance(value, list):
        return []
    elements: list[dict[str, Any]] = []
    for entry in value:
        if not isinstance(entry, dict) or entry.get("uid") is None:
            continue
        element = dict(entry)
        element["uid"] = _as_text(entry["uid"])
        element["value"] = _as_text(entry.get("value"))
        elements.append(element)
    return elements
