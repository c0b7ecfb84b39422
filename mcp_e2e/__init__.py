"""End-to-end browser tests driven by an LLM through MCP tool calls.

An AI model reads plain-text test steps and drives a browser automation
server (``chrome-devtools-mcp`` by default) through tool calls. The engine
keeps that conversation honest: schema-driven argument repair, outcome
classification, loop detection, turn and time budgets, and no "done"
while the last step failed.

Usage:
    from mcp_e2e import RunnerConfig, load_scenarios, run_scenarios

    config = RunnerConfig.load()                 # defaults <- YAML <- env
    results = await run_scenarios(load_scenarios("scenarios/"), config)

    # Lower level
    async with ProviderClient(config.provider) as client:
        registry = await client.list_capabilities()
        engine = ConversationEngine(client, LiteLLMBackend(config.backend), registry)
        result = await engine.run(["Open https://example.test", "Click Sign in"])
        print(result.success, result.reason)
"""

from mcp_e2e.backend import (
    AssistantTurn,
    CompletionBackend,
    LiteLLMBackend,
    ToolCallRequest,
    parse_completion_envelope,
)
from mcp_e2e.classifier import (
    ClassifiedReason,
    ClassifierPolicy,
    OutcomeClassifier,
    OutcomeKind,
    ToolCallOutcome,
)
from mcp_e2e.config import (
    BackendSettings,
    EngineSettings,
    ProviderSettings,
    RunnerConfig,
    ToolNames,
)
from mcp_e2e.engine import (
    ConversationEngine,
    RunResult,
    RunState,
    RunStatus,
    TranscriptEntry,
    is_successful_report,
)
from mcp_e2e.errors import (
    BackendError,
    E2EError,
    LoopDetected,
    PreconditionViolation,
    ProtocolError,
    ProviderConnectionError,
    RunAborted,
    TimeBudgetExceeded,
    ToolFailure,
    TransportError,
    TurnsExhausted,
)
from mcp_e2e.metrics import UsageLedger
from mcp_e2e.normalizer import ArgumentNormalizer
from mcp_e2e.prompts import render_prompt
from mcp_e2e.registry import CapabilityRegistry, ToolDescriptor
from mcp_e2e.runner import run_scenario, run_scenarios
from mcp_e2e.scenarios import Scenario, load_scenarios
from mcp_e2e.transport import ProviderClient, ToolResult

__all__ = [
    "ArgumentNormalizer",
    "AssistantTurn",
    "BackendError",
    "BackendSettings",
    "CapabilityRegistry",
    "ClassifiedReason",
    "ClassifierPolicy",
    "CompletionBackend",
    "ConversationEngine",
    "E2EError",
    "EngineSettings",
    "LiteLLMBackend",
    "LoopDetected",
    "OutcomeClassifier",
    "OutcomeKind",
    "PreconditionViolation",
    "ProtocolError",
    "ProviderClient",
    "ProviderConnectionError",
    "ProviderSettings",
    "RunAborted",
    "RunResult",
    "RunState",
    "RunStatus",
    "RunnerConfig",
    "Scenario",
    "TimeBudgetExceeded",
    "ToolCallOutcome",
    "ToolCallRequest",
    "ToolDescriptor",
    "ToolFailure",
    "ToolNames",
    "ToolResult",
    "TranscriptEntry",
    "TransportError",
    "TurnsExhausted",
    "UsageLedger",
    "is_successful_report",
    "load_scenarios",
    "parse_completion_envelope",
    "render_prompt",
    "run_scenario",
    "run_scenarios",
]
