"""Scenario runner: one provider, one conversation, always cleaned up.

Usage:
    from mcp_e2e import RunnerConfig, load_scenarios, run_scenarios

    config = RunnerConfig.load()
    results = await run_scenarios(load_scenarios("scenarios/"), config)
    for r in results:
        print(r.name, "PASS" if r.success else "FAIL", r.reason)
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Sequence

from mcp_e2e.backend import CompletionBackend, LiteLLMBackend
from mcp_e2e.config import ProviderSettings, RunnerConfig, ToolNames
from mcp_e2e.engine import EXECUTION_FAILED_MARKER, ConversationEngine, RunResult, RunStatus
from mcp_e2e.errors import ProtocolError, ProviderConnectionError, TransportError
from mcp_e2e.registry import CapabilityRegistry
from mcp_e2e.scenarios import Scenario, prepare_scenario
from mcp_e2e.transport import ProviderClient

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ProviderSettings], ProviderClient]
BackendFactory = Callable[[], CompletionBackend]


def zoom_function(level: float) -> str:
    percent = int(round(level * 100))
    return (
        f"() => {{ document.body.style.zoom = '{percent}%'; "
        f"return 'Zoom set to {percent}%'; }}"
    )


async def prepare_browser(
    client: ProviderClient,
    registry: CapabilityRegistry,
    settings: ProviderSettings,
    tools: ToolNames,
) -> None:
    """Resize the page and set its zoom when the provider offers the tools. Best-effort."""
    if settings.window_width and settings.window_height and tools.resize in registry:
        try:
            await client.invoke(
                tools.resize, {"width": settings.window_width, "height": settings.window_height},
            )
            logger.info("Page resized to %dx%d", settings.window_width, settings.window_height)
        except ProtocolError as exc:
            logger.warning("Page resize failed: %s", exc)

    if settings.zoom_level and tools.evaluate in registry:
        try:
            await client.invoke(tools.evaluate, {"function": zoom_function(settings.zoom_level), "args": []})
            logger.info("Page zoom set to %.0f%%", settings.zoom_level * 100)
        except ProtocolError as exc:
            logger.warning("Setting page zoom failed: %s", exc)


def _failed_result(name: str, status: RunStatus, reason: str, started: float) -> RunResult:
    return RunResult(
        status=status,
        reason=reason,
        report=reason,
        elapsed_s=round(time.monotonic() - started, 3),
        name=name,
    )


def _connection_failure(name: str, exc: Exception, started: float) -> RunResult:
    logger.error("Scenario %s could not start: %s", name, exc)
    return _failed_result(name, RunStatus.CONNECTION_ERROR, f"{EXECUTION_FAILED_MARKER} {exc}", started)


def _unexpected_failure(name: str, exc: Exception, started: float) -> RunResult:
    logger.error("Scenario %s crashed: %s: %s", name, type(exc).__name__, exc, exc_info=exc)
    reason = f"{EXECUTION_FAILED_MARKER} unexpected {type(exc).__name__}: {exc}"
    return _failed_result(name, RunStatus.EXECUTION_FAILED, reason, started)


async def run_scenario(
    scenario: Scenario,
    config: RunnerConfig | None = None,
    *,
    backend: CompletionBackend | None = None,
    client_factory: ClientFactory = ProviderClient,
) -> RunResult:
    """Run one scenario end to end. The provider is closed on every exit path."""
    config = config or RunnerConfig()
    prepared = prepare_scenario(scenario, config.variables, config.app_url)
    logger.info(
        "Scenario %s: %d steps, target %s", prepared.name, len(prepared.steps), prepared.url or "(none)",
    )

    started = time.monotonic()
    client = client_factory(config.provider)
    try:
        try:
            await client.connect()
            registry = await client.list_capabilities()
            await prepare_browser(client, registry, config.provider, config.tools)
        except (ProviderConnectionError, TransportError, ProtocolError) as exc:
            return _connection_failure(prepared.name, exc, started)

        engine = ConversationEngine(
            client,
            backend or LiteLLMBackend(config.backend),
            registry,
            settings=config.engine,
            tools=config.tools,
        )
        try:
            result = await engine.run(prepared.steps, target_url=prepared.url)
        except Exception as exc:
            return _unexpected_failure(prepared.name, exc, started)
        result.name = prepared.name
        return result
    finally:
        await client.close()


async def run_scenarios(
    scenarios: Sequence[Scenario],
    config: RunnerConfig | None = None,
    *,
    max_concurrent: int | None = None,
    backend_factory: BackendFactory | None = None,
    client_factory: ClientFactory = ProviderClient,
) -> list[RunResult]:
    """Run scenarios in a bounded pool. Results come back in input order."""
    if not scenarios:
        return []
    config = config or RunnerConfig()
    sem = asyncio.Semaphore(max_concurrent or config.max_concurrent)

    async def _run_one(scenario: Scenario) -> RunResult:
        async with sem:
            backend = backend_factory() if backend_factory is not None else None
            return await run_scenario(scenario, config, backend=backend, client_factory=client_factory)

    outcomes = await asyncio.gather(*(_run_one(s) for s in scenarios), return_exceptions=True)
    results: list[RunResult] = []
    for scenario, outcome in zip(scenarios, outcomes):
        if isinstance(outcome, RunResult):
            results.append(outcome)
        elif isinstance(outcome, Exception):
            results.append(_unexpected_failure(scenario.name, outcome, time.monotonic()))
        else:
            raise outcome
    passed = sum(1 for r in results if r.success)
    logger.info("%d/%d scenarios passed", passed, len(results))
    return results


def format_summary(results: Sequence[RunResult]) -> str:
    """Plain-text table of results for terminals."""
    lines: list[str] = []
    for r in results:
        verdict = "PASS" if r.success else "FAIL"
        lines.append(f"{verdict}  {r.name}  ({r.turns} turns, {r.elapsed_s:.1f}s)  {r.reason}")
    passed = sum(1 for r in results if r.success)
    lines.append(f"{passed}/{len(results)} scenarios passed")
    return "\n".join(lines)
