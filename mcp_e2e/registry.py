"""Capability registry: the provider's tool list, fetched once per run.

Descriptors come straight off the ``tools/list`` response and are validated
with pydantic. After construction the registry is read-only; the engine,
normalizer and backend all look schemas up through it.
"""

from __future__ import annotations

import copy
import logging
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

EMPTY_OBJECT_SCHEMA: Mapping[str, Any] = MappingProxyType({"type": "object", "properties": {}})


class ToolDescriptor(BaseModel):
    """One remote tool: name, description, and JSON-schema for its arguments."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    name: str
    description: str = ""
    parameter_schema: dict[str, Any] = Field(
        default_factory=lambda: dict(EMPTY_OBJECT_SCHEMA), alias="inputSchema",
    )

    @field_validator("description", mode="before")
    @classmethod
    def _none_description(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("parameter_schema", mode="before")
    @classmethod
    def _object_schema(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return {"type": "object", "properties": {}}
        schema = dict(value)
        schema.setdefault("type", "object")
        if not isinstance(schema.get("properties"), dict):
            schema["properties"] = {}
        return schema

    def to_openai(self) -> dict[str, Any]:
        """Convert to OpenAI function-calling format.

        MCP: {"name": "foo", "description": "...", "inputSchema": {...}}
        OpenAI: {"type": "function", "function": {"name": "foo", "description": "...", "parameters": {...}}}
        """
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": copy.deepcopy(self.parameter_schema),
            },
        }


class CapabilityRegistry:
    """Immutable name -> descriptor snapshot with schema lookups."""

    def __init__(self, descriptors: Iterable[ToolDescriptor]) -> None:
        by_name: dict[str, ToolDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in by_name:
                logger.warning("Duplicate tool %r from provider; keeping the first", descriptor.name)
                continue
            by_name[descriptor.name] = descriptor
        self._by_name: Mapping[str, ToolDescriptor] = MappingProxyType(by_name)
        logger.info("Capability registry: %d tools", len(by_name))

    @classmethod
    def from_wire(cls, tools: Iterable[Mapping[str, Any]]) -> "CapabilityRegistry":
        """Build from raw ``tools/list`` entries, skipping malformed ones."""
        descriptors: list[ToolDescriptor] = []
        for raw in tools:
            if not isinstance(raw, Mapping) or not raw.get("name"):
                logger.warning("Skipping malformed tool descriptor: %r", raw)
                continue
            descriptors.append(ToolDescriptor.model_validate(dict(raw)))
        return cls(descriptors)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return len(self._by_name)

    @property
    def names(self) -> list[str]:
        return list(self._by_name)

    @property
    def descriptors(self) -> tuple[ToolDescriptor, ...]:
        return tuple(self._by_name.values())

    def schema_for(self, name: str) -> dict[str, Any] | None:
        """Parameter schema of *name*, or None for an unknown tool."""
        descriptor = self._by_name.get(name)
        return descriptor.parameter_schema if descriptor else None

    def to_openai_tools(self) -> list[dict[str, Any]]:
        """Every descriptor in OpenAI function-tool format, provider order."""
        return [descriptor.to_openai() for descriptor in self._by_name.values()]
