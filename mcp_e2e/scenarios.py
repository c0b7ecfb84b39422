"""Scenario input: loading, placeholder resolution, target URL discovery.

A scenario is an ordered list of plain-text instructions. Supported sources:

- ``.txt`` / ``.csv``: one instruction per line; blank lines and ``#``
  comments are dropped. The file is one scenario named after its stem.
- ``.yaml`` / ``.yml``: either a single mapping ``{name, steps, url?}`` or
  ``{scenarios: [{name, steps, url?}, ...]}``. ``steps`` may be a list or
  a multi-line string.
- a directory: every supported file in it, sorted by name.

``${name}`` placeholders are resolved against configured variables, then
the environment (the name as-is, then upper-cased with ``.`` -> ``_``, so
``${crm.username}`` finds ``CRM_USERNAME``).
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

import yaml  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)

TEXT_SUFFIXES = (".txt", ".csv")
YAML_SUFFIXES = (".yaml", ".yml")

BLANK_URL = "about:blank"

_PLACEHOLDER_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_.\-]*)\}")
_URL_RE = re.compile(r"https?://\S+")
_URL_TRAILING = ".,;)'\"]"


@dataclass
class Scenario:
    name: str
    steps: list[str] = field(default_factory=list)
    url: str | None = None
    source: Path | None = None

    @property
    def task(self) -> str:
        return "\n".join(self.steps)


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def resolve_placeholders(
    text: str,
    variables: Mapping[str, str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> str:
    """Substitute ``${name}`` tokens. Unknown names are left in place and logged."""
    variables = variables or {}
    env = os.environ if environ is None else environ

    def _lookup(match: re.Match[str]) -> str:
        name = match.group(1)
        env_name = name.upper().replace(".", "_").replace("-", "_")
        for source, key in ((variables, name), (variables, env_name), (env, name), (env, env_name)):
            if key in source:
                return str(source[key])
        logger.warning("Unresolved placeholder ${%s}", name)
        return match.group(0)

    return _PLACEHOLDER_RE.sub(_lookup, text)


def extract_first_url(text: str) -> str | None:
    """First http(s) URL in *text*, minus trailing punctuation."""
    match = _URL_RE.search(text)
    if not match:
        return None
    url = match.group(0).rstrip(_URL_TRAILING)
    return url or None


def split_steps(text: str) -> list[str]:
    steps: list[str] = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if len(line) >= 2 and line[0] == line[-1] == '"':
            line = line[1:-1].strip()
        if line:
            steps.append(line)
    return steps


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _scenario_from_mapping(raw: Any, default_name: str, source: Path) -> Scenario:
    if not isinstance(raw, dict):
        raise ValueError(f"Scenario entry must be a mapping, got {type(raw).__name__}: {source}")
    steps_raw = raw.get("steps")
    if isinstance(steps_raw, str):
        steps = split_steps(steps_raw)
    elif isinstance(steps_raw, list):
        steps = [str(s).strip() for s in steps_raw if str(s).strip()]
    else:
        raise ValueError(f"Scenario {raw.get('name', default_name)!r} has no steps: {source}")
    url = raw.get("url")
    return Scenario(
        name=str(raw.get("name") or default_name),
        steps=steps,
        url=str(url) if url else None,
        source=source,
    )


def load_scenario_file(path: str | Path) -> list[Scenario]:
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Scenario file not found: {path}")
    text = path.read_text(encoding="utf-8")

    if path.suffix in YAML_SUFFIXES:
        raw = yaml.safe_load(text)
        if isinstance(raw, dict) and "scenarios" in raw:
            entries = raw["scenarios"]
            if not isinstance(entries, list):
                raise ValueError(f"'scenarios' must be a list: {path}")
            return [
                _scenario_from_mapping(entry, f"{path.stem}-{i + 1}", path)
                for i, entry in enumerate(entries)
            ]
        return [_scenario_from_mapping(raw, path.stem, path)]

    steps = split_steps(text)
    if not steps:
        raise ValueError(f"Scenario file has no instructions: {path}")
    return [Scenario(name=path.stem, steps=steps, source=path)]


def load_scenarios(*paths: str | Path) -> list[Scenario]:
    """Load scenarios from files and directories, in argument order."""
    scenarios: list[Scenario] = []
    for p in paths:
        path = Path(p)
        if path.is_dir():
            files = sorted(
                f for f in path.iterdir()
                if f.is_file() and f.suffix in TEXT_SUFFIXES + YAML_SUFFIXES
            )
            for f in files:
                scenarios.extend(load_scenario_file(f))
        else:
            scenarios.extend(load_scenario_file(path))
    logger.info("Loaded %d scenarios", len(scenarios))
    return scenarios


def prepare_scenario(
    scenario: Scenario,
    variables: Mapping[str, str] | None = None,
    app_url: str | None = None,
) -> Scenario:
    """Resolve placeholders and settle the target URL.

    URL precedence: the scenario's own, the configured app URL (unless it is
    ``about:blank``), then the first URL mentioned in the steps.
    """
    steps = [resolve_placeholders(step, variables) for step in scenario.steps]
    url = scenario.url and resolve_placeholders(scenario.url, variables)
    if not url and app_url and app_url != BLANK_URL:
        url = app_url
    if not url:
        url = extract_first_url("\n".join(steps))
    return replace(scenario, steps=steps, url=url or None)
