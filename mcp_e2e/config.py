"""Typed runtime configuration for mcp_e2e.

Settings are resolved once and passed explicitly through the runner, engine
and clients. Resolution order: dataclass defaults, then an optional YAML
file, then environment variables.

YAML format::

    backend:
      model: openai/llama3.2
      api_base: http://localhost:11434/v1
    provider:
      command: chrome-devtools-mcp
      args: ["--isolated"]
    engine:
      max_turns: 30
      time_budget_s: 300
    app_url: https://example.test/login
    variables:
      CRM_USERNAME: alice
"""

from __future__ import annotations

import logging
import os
import shlex
import sys
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable

import yaml  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "MCP_E2E_CONFIG"
MODEL_ENV = "MCP_E2E_MODEL"
API_BASE_ENV = "MCP_E2E_API_BASE"
API_KEY_ENV = "MCP_E2E_API_KEY"
PROVIDER_COMMAND_ENV = "MCP_E2E_PROVIDER_COMMAND"
PROVIDER_ARGS_ENV = "MCP_E2E_PROVIDER_ARGS"
MIN_TIMEOUT_ENV = "MCP_E2E_MIN_TIMEOUT_MS"
DEFAULT_TIMEOUT_ENV = "MCP_E2E_DEFAULT_TIMEOUT_MS"
TIME_BUDGET_ENV = "MCP_E2E_TIME_BUDGET_S"
MAX_TURNS_ENV = "MCP_E2E_MAX_TURNS"
MAX_REPEATED_FAILURES_ENV = "MCP_E2E_MAX_REPEATED_FAILURES"
MAX_HISTORY_ENV = "MCP_E2E_MAX_HISTORY"
KILL_BROWSER_ENV = "MCP_E2E_KILL_BROWSER"
MAX_CONCURRENT_ENV = "MCP_E2E_MAX_CONCURRENT"
APP_URL_ENV = "APP_URL"

DEFAULT_MODEL = "openai/llama3.2"
DEFAULT_API_BASE = "http://localhost:11434/v1"
DEFAULT_API_KEY = "ollama"


def _default_provider_command() -> str:
    return "chrome-devtools-mcp.cmd" if sys.platform == "win32" else "chrome-devtools-mcp"


@dataclass(frozen=True)
class BackendSettings:
    """Completion backend: which model, where, and how hard to retry."""

    model: str = DEFAULT_MODEL
    api_base: str | None = DEFAULT_API_BASE
    api_key: str | None = DEFAULT_API_KEY
    temperature: float = 0.1
    timeout_s: float = 120.0
    num_retries: int = 2
    base_delay: float = 1.0
    max_delay: float = 30.0


@dataclass(frozen=True)
class ProviderSettings:
    """Tool provider subprocess and browser preparation."""

    command: str = field(default_factory=_default_provider_command)
    args: tuple[str, ...] = ("--isolated",)
    env: dict[str, str] | None = None
    init_timeout_s: float = 30.0
    request_timeout_s: float = 300.0
    shutdown_grace_s: float = 2.0
    kill_browser_processes: bool = False
    window_width: int | None = 2850
    window_height: int | None = 1200
    zoom_level: float | None = 0.6
    client_name: str = "mcp-e2e-tests"
    client_version: str = "0.1.0"


@dataclass(frozen=True)
class EngineSettings:
    """Budgets and ceilings for one conversation."""

    max_turns: int = 30
    max_repeated_failures: int = 3
    max_history_messages: int = 15
    time_budget_s: float = 300.0
    soft_budget_ratio: float = 0.8
    min_timeout_ms: int = 2000
    default_timeout_ms: int = 10000
    tool_result_max_length: int = 50_000
    initial_navigation: bool = True


@dataclass(frozen=True)
class ToolNames:
    """Provider tool vocabulary the engine treats specially."""

    navigate: str = "navigate_page"
    snapshot: str = "take_snapshot"
    click: str = "click"
    fill: str = "fill"
    hover: str = "hover"
    fill_form: str = "fill_form"
    evaluate: str = "evaluate_script"
    wait: str = "wait_for"
    screenshot: str = "take_screenshot"
    resize: str = "resize_page"

    @property
    def interactions(self) -> frozenset[str]:
        """Tools that act on element ids taken from a snapshot."""
        return frozenset({self.click, self.fill, self.hover, self.fill_form})


@dataclass(frozen=True)
class RunnerConfig:
    """Everything a scenario run needs, resolved once."""

    backend: BackendSettings = field(default_factory=BackendSettings)
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    engine: EngineSettings = field(default_factory=EngineSettings)
    tools: ToolNames = field(default_factory=ToolNames)
    app_url: str | None = None
    variables: dict[str, str] = field(default_factory=dict)
    max_concurrent: int = 4

    @classmethod
    def from_env(cls, base: "RunnerConfig | None" = None) -> "RunnerConfig":
        """Overlay environment variables on *base* (or defaults)."""
        cfg = base or cls()

        backend = cfg.backend
        model = os.environ.get(MODEL_ENV, "").strip()
        if model:
            backend = replace(backend, model=model)
        api_base = os.environ.get(API_BASE_ENV, "").strip()
        if api_base:
            backend = replace(backend, api_base=api_base)
        api_key = os.environ.get(API_KEY_ENV, "").strip()
        if api_key:
            backend = replace(backend, api_key=api_key)

        provider = cfg.provider
        command = os.environ.get(PROVIDER_COMMAND_ENV, "").strip()
        if command:
            provider = replace(provider, command=command)
        args_raw = os.environ.get(PROVIDER_ARGS_ENV)
        if args_raw is not None:
            provider = replace(provider, args=tuple(args_raw.split()))
        provider = replace(
            provider,
            kill_browser_processes=_env_bool(KILL_BROWSER_ENV, provider.kill_browser_processes),
        )

        engine = replace(
            cfg.engine,
            min_timeout_ms=_env_number(MIN_TIMEOUT_ENV, cfg.engine.min_timeout_ms, int),
            default_timeout_ms=_env_number(DEFAULT_TIMEOUT_ENV, cfg.engine.default_timeout_ms, int),
            time_budget_s=_env_number(TIME_BUDGET_ENV, cfg.engine.time_budget_s, float),
            max_turns=_env_number(MAX_TURNS_ENV, cfg.engine.max_turns, int),
            max_repeated_failures=_env_number(
                MAX_REPEATED_FAILURES_ENV, cfg.engine.max_repeated_failures, int,
            ),
            max_history_messages=_env_number(MAX_HISTORY_ENV, cfg.engine.max_history_messages, int),
        )

        app_url = os.environ.get(APP_URL_ENV, "").strip() or cfg.app_url

        return replace(
            cfg,
            backend=backend,
            provider=provider,
            engine=engine,
            app_url=app_url,
            max_concurrent=_env_number(MAX_CONCURRENT_ENV, cfg.max_concurrent, int),
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "RunnerConfig":
        """Build config from a YAML file. Unknown keys are logged and ignored."""
        raw = _load_yaml_file(Path(path))
        return cls(
            backend=_build_section(BackendSettings, raw.get("backend"), "backend"),
            provider=_build_section(ProviderSettings, raw.get("provider"), "provider"),
            engine=_build_section(EngineSettings, raw.get("engine"), "engine"),
            tools=_build_section(ToolNames, raw.get("tools"), "tools"),
            app_url=str(raw["app_url"]) if raw.get("app_url") else None,
            variables={str(k): str(v) for k, v in (raw.get("variables") or {}).items()},
            max_concurrent=int(raw.get("max_concurrent", 4)),
        )

    @classmethod
    def load(cls, path: str | Path | None = None) -> "RunnerConfig":
        """Defaults, then YAML (*path* or ``MCP_E2E_CONFIG``), then environment."""
        config_path = path or os.environ.get(CONFIG_PATH_ENV, "").strip() or None
        base = cls.from_yaml(config_path) if config_path else cls()
        cfg = cls.from_env(base)
        cfg.validate()
        return cfg

    def validate(self) -> None:
        """Raise ValueError on settings no run could honour."""
        engine = self.engine
        if engine.max_turns < 1:
            raise ValueError(f"max_turns must be >= 1, got {engine.max_turns}")
        if engine.max_repeated_failures < 1:
            raise ValueError(
                f"max_repeated_failures must be >= 1, got {engine.max_repeated_failures}"
            )
        if engine.max_history_messages < 3:
            raise ValueError(
                f"max_history_messages must be >= 3, got {engine.max_history_messages}"
            )
        if engine.min_timeout_ms > engine.default_timeout_ms:
            raise ValueError(
                f"min_timeout_ms ({engine.min_timeout_ms}) exceeds "
                f"default_timeout_ms ({engine.default_timeout_ms})"
            )
        if not 0 < engine.soft_budget_ratio <= 1:
            raise ValueError(f"soft_budget_ratio must be in (0, 1], got {engine.soft_budget_ratio}")
        if self.max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {self.max_concurrent}")


def _load_yaml_file(path: Path) -> dict[str, Any]:
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")
    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config YAML must be a mapping, got {type(raw).__name__}: {path}")
    return raw


def _build_section(cls: type, raw: Any, section: str) -> Any:
    if not raw:
        return cls()
    if not isinstance(raw, dict):
        raise ValueError(f"Config section {section!r} must be a mapping, got {type(raw).__name__}")
    known = {f.name for f in fields(cls)}
    kwargs: dict[str, Any] = {}
    for key, value in raw.items():
        if key not in known:
            logger.warning("Ignoring unknown config key %s.%s", section, key)
            continue
        if key == "args":
            value = tuple(shlex.split(value)) if isinstance(value, str) else tuple(str(v) for v in value)
        kwargs[key] = value
    return cls(**kwargs)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off", ""}:
        return False
    logger.warning("Invalid %s=%r; expected on/off boolean. Keeping %s.", name, raw, default)
    return default


def _env_number(name: str, default: Any, cast: Callable[[str], Any]) -> Any:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = cast(raw.strip())
    except ValueError:
        logger.warning("Invalid %s=%r; expected a number. Keeping %s.", name, raw, default)
        return default
    if value <= 0:
        logger.warning("Invalid %s=%r; must be positive. Keeping %s.", name, raw, default)
        return default
    return value


def load_env_file(path: str | Path) -> int:
    """Load ``KEY=VALUE`` lines from *path* into os.environ.

    Skips comments, empty lines, and keys already set in the environment.
    Returns the number of keys loaded.
    """
    env_file = Path(path)
    if not env_file.is_file():
        return 0
    loaded = 0
    for line in env_file.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[7:]
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip().strip("\"'")
        if key and key not in os.environ:
            os.environ[key] = value
            loaded += 1
    if loaded:
        logger.debug("Loaded %d variables from %s", loaded, env_file)
    return loaded
