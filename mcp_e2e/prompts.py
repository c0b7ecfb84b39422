"""Conversation opening messages from YAML/Jinja2 templates.

A bare name such as ``"browser_agent"`` means the template shipped in
``mcp_e2e/prompts/``; anything with a YAML suffix or a directory part is a
path (absolute, or relative to cwd).

Template format::

    name: browser_agent
    version: "1.0"
    messages:
      - role: system
        content: |
          Always call {{ tools.navigate }} first.
      - role: user
        content: |
          {% for step in steps %}{{ loop.index }}. {{ step }}
          {% endfor %}

Templates are parsed and compiled once per file and cached, so concurrent
scenario runs share them.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]
from jinja2 import Environment, StrictUndefined, Template

logger = logging.getLogger(__name__)

PROMPTS_DIR = Path(__file__).parent / "prompts"

# StrictUndefined: a context variable the template needs but the caller omitted raises.
_env = Environment(undefined=StrictUndefined, autoescape=False)


def resolve_template(template: str | Path) -> Path:
    """Map a bare template name to the packaged file, or a path to itself."""
    path = Path(template)
    if path.suffix not in (".yaml", ".yml") and path.parent == Path("."):
        return PROMPTS_DIR / f"{path.name}.yaml"
    if not path.is_absolute():
        path = Path.cwd() / path
    return path


@lru_cache(maxsize=32)
def _compile(path: Path) -> tuple[tuple[str, Template], ...]:
    if not path.exists():
        raise FileNotFoundError(f"Prompt template not found: {path}")
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"Prompt YAML must be a mapping, got {type(raw).__name__}: {path}")

    entries = raw.get("messages")
    if not entries:
        raise ValueError(f"Prompt YAML missing 'messages' key: {path}")
    if not isinstance(entries, list):
        raise ValueError(f"'messages' must be a list, got {type(entries).__name__}: {path}")

    compiled: list[tuple[str, Template]] = []
    for index, entry in enumerate(entries):
        if not (isinstance(entry, dict) and {"role", "content"} <= entry.keys()):
            raise ValueError(f"Message {index} must have 'role' and 'content' keys: {path}")
        compiled.append((str(entry["role"]), _env.from_string(str(entry["content"]))))
    logger.debug("Compiled prompt template %s (%s)", path.name, raw.get("version", "unversioned"))
    return tuple(compiled)


def render_prompt(template: str | Path, **context: Any) -> list[dict[str, str]]:
    """Render a template into OpenAI-style chat messages.

    Raises:
        FileNotFoundError: no such template.
        ValueError: the YAML is not a mapping with a list of role/content messages.
        jinja2.UndefinedError: the template uses a variable missing from *context*.
    """
    path = resolve_template(template)
    messages = [
        {"role": role, "content": compiled.render(**context).strip()}
        for role, compiled in _compile(path)
    ]
    logger.debug(
        "Rendered prompt %s: %d messages, %d chars",
        path.name, len(messages), sum(len(m["content"]) for m in messages),
    )
    return messages
