"""Conversation engine: the bounded, self-correcting tool-calling loop.

The loop:
    1. Check the time budget (hard and soft) and the turn ceiling
    2. Send history + tools to the completion backend
    3. No tool calls -> finish, unless the last turn failed or the page was
       never opened, in which case a corrective message is appended (blocked)
    4. Tool calls -> precondition checks, normalize, invoke, classify; each
       result goes back as a tool message with the request's id
    5. Identical consecutive failures are counted; hitting the ceiling aborts
    6. A failed turn gets one consolidated corrective user message
    7. History is trimmed at an assistant-message boundary

Terminal outcomes (loop detected, turns exhausted, time budget, backend or
transport failure) end the run with a ``RunResult`` whose report carries a
marker line; ``RunResult.success`` is decided from those markers alone.
"""

from __future__ import annotations

import enum
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from mcp_e2e.backend import AssistantTurn, CompletionBackend, ToolCallRequest
from mcp_e2e.classifier import ClassifiedReason, OutcomeClassifier, ToolCallOutcome
from mcp_e2e.config import EngineSettings, ToolNames
from mcp_e2e.errors import (
    BackendError,
    LoopDetected,
    ProtocolError,
    PreconditionViolation,
    RunAborted,
    TimeBudgetExceeded,
    ToolFailure,
    TransportError,
    TurnsExhausted,
)
from mcp_e2e.metrics import UsageLedger
from mcp_e2e.normalizer import DEFAULT_WAIT_FUNCTION, ArgumentNormalizer
from mcp_e2e.prompts import render_prompt
from mcp_e2e.registry import CapabilityRegistry
from mcp_e2e.transport import ToolResult

logger = logging.getLogger(__name__)

EXECUTION_FAILED_MARKER = RunAborted.marker

TERMINAL_MARKERS: tuple[str, ...] = (
    LoopDetected.marker,
    TurnsExhausted.marker,
    TimeBudgetExceeded.marker,
    EXECUTION_FAILED_MARKER,
)
"""Report fragments that mark a run as failed. Nothing else does."""

DEFAULT_PROMPT_TEMPLATE = "browser_agent"


def is_successful_report(report: str) -> bool:
    return not any(marker in report for marker in TERMINAL_MARKERS)


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


class EngineState(str, enum.Enum):
    AWAITING_TURN = "awaiting_turn"
    PROCESSING_TOOL_CALLS = "processing_tool_calls"
    BLOCKED = "blocked"
    FINISHED = "finished"
    ABORTED = "aborted"


class RunStatus(str, enum.Enum):
    FINISHED = "finished"
    LOOP_DETECTED = "loop_detected"
    TURNS_EXHAUSTED = "turns_exhausted"
    TIME_BUDGET_EXCEEDED = "time_budget_exceeded"
    BACKEND_ERROR = "backend_error"
    TRANSPORT_ERROR = "transport_error"
    CONNECTION_ERROR = "connection_error"
    EXECUTION_FAILED = "execution_failed"


@dataclass
class RunState:
    """Per-run progress. Owned by one engine run, never shared."""

    started_at: float
    turn_index: int = 0
    navigation_satisfied: bool = False
    has_usable_snapshot: bool = False
    last_failure_signature: str | None = None
    repeated_failure_count: int = 0
    pending_failure: bool = False


@dataclass
class TranscriptEntry:
    """One tool call as executed (or rejected) during the run."""

    turn: int
    call_id: str
    tool_name: str
    arguments: dict[str, Any]
    outcome: ToolCallOutcome
    latency_s: float = 0.0


@dataclass
class RunResult:
    status: RunStatus
    reason: str = ""
    report: str = ""
    elapsed_s: float = 0.0
    turns: int = 0
    final_message: str = ""
    transcript: list[TranscriptEntry] = field(default_factory=list)
    messages: list[dict[str, Any]] = field(default_factory=list)
    metrics: UsageLedger = field(default_factory=UsageLedger)
    name: str = ""

    @property
    def success(self) -> bool:
        return is_successful_report(self.report)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "success": self.success,
            "status": self.status.value,
            "reason": self.reason,
            "elapsed_s": self.elapsed_s,
            "turns": self.turns,
            "tool_calls": len(self.transcript),
            "final_message": self.final_message,
            "metrics": self.metrics.to_dict(),
            "report": self.report,
        }


class ToolInvoker(Protocol):
    async def invoke(self, name: str, arguments: dict[str, Any]) -> ToolResult: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _truncate(text: str, max_length: int) -> str:
    """Truncate text if it exceeds max_length, appending a notice."""
    if len(text) <= max_length:
        return text
    return text[:max_length] + f"\n... [truncated at {max_length} chars]"


def _preview(value: Any, limit: int = 160) -> str:
    text = json.dumps(value, default=str, ensure_ascii=False)
    return text if len(text) <= limit else text[:limit] + "..."


def failure_signature(tool_name: str, message: str) -> str:
    """Identity of a failure for repeat detection: tool plus the start of its message."""
    return f"{tool_name}:{message[:100]}"


def trim_history(messages: list[dict[str, Any]], max_messages: int) -> list[dict[str, Any]]:
    """Keep the first two messages and a tail that starts at an assistant message.

    Tool messages are never separated from the assistant message that
    requested them. Returns *messages* unchanged when no safe cut exists.
    """
    if len(messages) <= max_messages:
        return messages
    head = messages[:2]
    start = len(messages) - (max_messages - 2)
    for i in range(start, len(messages)):
        if messages[i].get("role") == "assistant":
            return head + messages[i:]
    for i in range(start - 1, 1, -1):
        if messages[i].get("role") == "assistant":
            return head + messages[i:]
    return messages


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ConversationEngine:
    """Drives one AI conversation against one tool provider."""

    def __init__(
        self,
        client: ToolInvoker,
        backend: CompletionBackend,
        registry: CapabilityRegistry,
        *,
        settings: EngineSettings | None = None,
        tools: ToolNames | None = None,
        normalizer: ArgumentNormalizer | None = None,
        classifier: OutcomeClassifier | None = None,
        prompt_template: str = DEFAULT_PROMPT_TEMPLATE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.backend = backend
        self.registry = registry
        self.settings = settings or EngineSettings()
        self.tools = tools or ToolNames()
        self.normalizer = normalizer or ArgumentNormalizer(registry, self.settings, self.tools)
        self.classifier = classifier or OutcomeClassifier(self.tools)
        self.prompt_template = prompt_template
        self._clock = clock

        self.engine_state = EngineState.AWAITING_TURN
        self.transcript: list[TranscriptEntry] = []
        self.ledger = UsageLedger()
        self._report: list[str] = []
        self._target_url: str | None = None

    # -- public ---------------------------------------------------------------

    def build_messages(
        self, steps: list[str], target_url: str | None, initial_navigation: str | None,
    ) -> list[dict[str, Any]]:
        return render_prompt(
            self.prompt_template,
            steps=steps,
            target_url=target_url,
            initial_navigation=initial_navigation,
            tools=self.tools,
            wait_function=DEFAULT_WAIT_FUNCTION,
        )

    async def run(self, steps: list[str], *, target_url: str | None = None) -> RunResult:
        """Run the conversation for *steps* to a terminal outcome. Never raises for run failures."""
        state = RunState(started_at=self._clock())
        self._target_url = target_url
        self.transcript = []
        self.ledger = UsageLedger()
        self._report = []
        messages: list[dict[str, Any]] = []
        final_message = ""
        status = RunStatus.FINISHED
        reason = ""

        try:
            nav_status = await self._initial_navigation(state)
            state.pending_failure = not state.navigation_satisfied
            messages = self.build_messages(steps, target_url, nav_status)
            final_message = await self._loop(state, messages)
            reason = "Task completed"
            self._report.append(f"Completed: {final_message}")
        except RunAborted as exc:
            status = _ABORT_STATUS.get(type(exc), RunStatus.TRANSPORT_ERROR)
            reason = str(exc)
            self._abort(reason)
        except BackendError as exc:
            status = RunStatus.BACKEND_ERROR
            reason = f"{EXECUTION_FAILED_MARKER} completion backend error: {exc}"
            self._abort(reason)
        except TransportError as exc:
            status = RunStatus.TRANSPORT_ERROR
            reason = f"{EXECUTION_FAILED_MARKER} tool provider connection lost: {exc}"
            self._abort(reason)

        elapsed = round(self._clock() - state.started_at, 3)
        result = RunResult(
            status=status,
            reason=reason,
            report="\n".join(self._report),
            elapsed_s=elapsed,
            turns=state.turn_index,
            final_message=final_message,
            transcript=list(self.transcript),
            messages=list(messages),
            metrics=self.ledger,
        )
        logger.info(
            "Run %s after %d turns in %.1fs (%s). %s",
            "succeeded" if result.success else "failed",
            state.turn_index, elapsed, status.value, self.ledger.summary(),
        )
        return result

    # -- loop -----------------------------------------------------------------

    async def _loop(self, state: RunState, messages: list[dict[str, Any]]) -> str:
        openai_tools = self.registry.to_openai_tools()
        while True:
            self._check_budgets(state)
            state.turn_index += 1
            self._transition(EngineState.AWAITING_TURN)
            logger.info("Turn %d/%d", state.turn_index, self.settings.max_turns)

            turn = await self.backend.complete(messages, openai_tools)
            self.ledger.add_call(state.turn_index, turn.usage, len(turn.tool_calls), turn.latency_s)
            messages.append(turn.to_message())

            if not turn.tool_calls:
                if state.pending_failure or not state.navigation_satisfied:
                    self._transition(EngineState.BLOCKED)
                    messages.append({"role": "user", "content": self._blocked_message(state)})
                    self._report.append(f"[turn {state.turn_index}] finish blocked: task not complete")
                    messages[:] = trim_history(messages, self.settings.max_history_messages)
                    continue
                self._transition(EngineState.FINISHED)
                return turn.content

            self._transition(EngineState.PROCESSING_TOOL_CALLS)
            failures = await self._process_tool_calls(turn, state, messages)
            if failures:
                messages.append({"role": "user", "content": self._corrective_message(failures)})
                state.pending_failure = True
            else:
                state.pending_failure = False

            before = len(messages)
            messages[:] = trim_history(messages, self.settings.max_history_messages)
            if len(messages) < before:
                logger.debug("Trimmed history from %d to %d messages", before, len(messages))

    def _check_budgets(self, state: RunState) -> None:
        elapsed = self._clock() - state.started_at
        budget = self.settings.time_budget_s
        elapsed_ms = int(elapsed * 1000)
        budget_ms = int(budget * 1000)
        if elapsed >= budget:
            raise TimeBudgetExceeded(
                f"{TimeBudgetExceeded.marker} {elapsed_ms} ms (budget {budget_ms} ms)"
            )
        if elapsed >= budget * self.settings.soft_budget_ratio:
            raise TimeBudgetExceeded(
                f"{TimeBudgetExceeded.marker} {elapsed_ms} ms: stopped at "
                f"{self.settings.soft_budget_ratio:.0%} of the {budget_ms} ms budget"
            )
        if state.turn_index >= self.settings.max_turns:
            raise TurnsExhausted(f"{TurnsExhausted.marker} ({self.settings.max_turns})")

    async def _process_tool_calls(
        self,
        turn: AssistantTurn,
        state: RunState,
        messages: list[dict[str, Any]],
    ) -> list[ToolFailure]:
        failures: list[ToolFailure] = []
        requests = turn.tool_calls
        for index, request in enumerate(requests):
            t0 = self._clock()
            try:
                outcome, arguments = await self._execute_call(request, state)
            except TransportError:
                self._skip_remaining(requests[index:], messages, "provider connection lost")
                raise
            latency = round(self._clock() - t0, 3)

            messages.append({
                "role": "tool",
                "tool_call_id": request.id,
                "content": _truncate(outcome.result_text, self.settings.tool_result_max_length),
            })
            self._record(state, request, arguments, outcome, latency)

            failure = outcome.to_exception(request.tool_name)
            if failure is None:
                state.last_failure_signature = None
                state.repeated_failure_count = 0
                continue

            failures.append(failure)
            try:
                self._register_failure(failure, state)
            except LoopDetected:
                self._skip_remaining(requests[index + 1:], messages, "repeated failure")
                raise
        return failures

    async def _execute_call(
        self, request: ToolCallRequest, state: RunState,
    ) -> tuple[ToolCallOutcome, dict[str, Any]]:
        name = request.tool_name
        tools = self.tools

        if request.argument_error:
            return ToolCallOutcome.failure(
                ClassifiedReason.INVALID_ARGUMENTS,
                f"{name} arguments rejected: {request.argument_error}. Send arguments as a JSON object.",
            ), request.raw_arguments
        if name not in self.registry:
            return ToolCallOutcome.failure(
                ClassifiedReason.TOOL_ERROR,
                f"Unknown tool: {name!r}. Available tools: {', '.join(self.registry.names)}",
            ), request.raw_arguments
        if not state.navigation_satisfied and name != tools.navigate:
            return ToolCallOutcome.violation(
                ClassifiedReason.NAVIGATION_REQUIRED,
                f"{name} rejected: the application is not open yet. Call {tools.navigate} first.",
            ), request.raw_arguments

        arguments = self.normalizer.normalize(name, request.raw_arguments, target_url=self._target_url)
        rejected = self.classifier.precheck(name, arguments, state)
        if rejected is not None:
            return rejected, arguments
        return await self._invoke_and_classify(name, arguments, state), arguments

    async def _invoke_and_classify(
        self, name: str, arguments: dict[str, Any], state: RunState,
    ) -> ToolCallOutcome:
        try:
            result = await self.client.invoke(name, arguments)
        except ProtocolError as exc:
            outcome = ToolCallOutcome.failure(ClassifiedReason.PROTOCOL_ERROR, f"{name} failed: {exc}")
        else:
            text = _truncate(result.text, self.settings.tool_result_max_length)
            outcome = self.classifier.classify(name, arguments, text, state, is_error=result.is_error)

        tools = self.tools
        if name == tools.navigate:
            state.has_usable_snapshot = False
            if outcome.success:
                state.navigation_satisfied = True
        elif name == tools.snapshot:
            if outcome.success:
                state.has_usable_snapshot = True
        elif name in tools.interactions:
            state.has_usable_snapshot = False
        return outcome

    async def _initial_navigation(self, state: RunState) -> str | None:
        """Open the target page before the first turn. Returns a status line for the prompt."""
        url = self._target_url
        if not url or not self.settings.initial_navigation or self.tools.navigate not in self.registry:
            return None
        name = self.tools.navigate
        arguments = self.normalizer.normalize(name, {"url": url}, target_url=url)
        t0 = self._clock()
        outcome = await self._invoke_and_classify(name, arguments, state)
        request = ToolCallRequest(id="initial_navigation", tool_name=name, raw_arguments=arguments)
        self._record(state, request, arguments, outcome, round(self._clock() - t0, 3))
        if outcome.success:
            return f"{url} is already open. Take a snapshot before interacting with it."
        logger.warning("Initial navigation to %s failed: %s", url, outcome.message)
        return f"opening {url} failed ({outcome.message[:200]}). Call {name} first."

    # -- failure handling -----------------------------------------------------

    def _register_failure(self, failure: ToolFailure, state: RunState) -> None:
        signature = failure_signature(failure.tool_name, str(failure))
        if signature == state.last_failure_signature:
            state.repeated_failure_count += 1
        else:
            state.last_failure_signature = signature
            state.repeated_failure_count = 1
        logger.warning(
            "Tool failure %d/%d (%s): %s",
            state.repeated_failure_count, self.settings.max_repeated_failures,
            "precondition violation" if isinstance(failure, PreconditionViolation) else "tool failure",
            signature,
        )
        if state.repeated_failure_count >= self.settings.max_repeated_failures:
            raise LoopDetected(
                f"{LoopDetected.marker} {state.repeated_failure_count} times: {signature}"
            )

    def _corrective_message(self, failures: list[ToolFailure]) -> str:
        tools = self.tools
        lines = ["The previous tool call(s) failed:"]
        for failure in failures:
            lines.append(f"- {failure.tool_name}: {failure}")
        reasons = {failure.reason for failure in failures}
        if reasons & {ClassifiedReason.NAVIGATION_REQUIRED}:
            lines.append(f"Open the application with {tools.navigate} before anything else.")
        if reasons & {
            ClassifiedReason.SNAPSHOT_REQUIRED,
            ClassifiedReason.NO_SNAPSHOT,
            ClassifiedReason.PLACEHOLDER_UID,
        }:
            lines.append(
                f"Call {tools.snapshot} now and use a uid from it (they look like '1_5'), "
                "not element labels or selectors."
            )
        lines.append("Fix the failing step before continuing. Do not repeat a call that failed the same way.")
        return "\n".join(lines)

    def _blocked_message(self, state: RunState) -> str:
        if not state.navigation_satisfied:
            target = f" with url {self._target_url!r}" if self._target_url else ""
            return (
                f"The test is not complete: the application was never opened. "
                f"Call {self.tools.navigate}{target} and then carry out the steps."
            )
        return (
            "The test is not complete: the last tool call failed. Fix that step "
            f"(take a fresh {self.tools.snapshot} if needed) and continue with the remaining steps."
        )

    def _skip_remaining(
        self, requests: list[ToolCallRequest], messages: list[dict[str, Any]], why: str,
    ) -> None:
        for request in requests:
            messages.append({
                "role": "tool",
                "tool_call_id": request.id,
                "content": f"Skipped: run aborted ({why}).",
            })

    # -- bookkeeping ----------------------------------------------------------

    def _record(
        self,
        state: RunState,
        request: ToolCallRequest,
        arguments: dict[str, Any],
        outcome: ToolCallOutcome,
        latency: float,
    ) -> None:
        self.transcript.append(
            TranscriptEntry(state.turn_index, request.id, request.tool_name, arguments, outcome, latency)
        )
        status = "OK" if outcome.success else f"{outcome.kind.value} ({outcome.reason.value}): {outcome.message[:200]}"
        self._report.append(f"[turn {state.turn_index}] {request.tool_name} {_preview(arguments)} -> {status}")
        if outcome.success:
            logger.info("Turn %d: %s ok (%.2fs)", state.turn_index, request.tool_name, latency)

    def _abort(self, reason: str) -> None:
        self._transition(EngineState.ABORTED)
        logger.error("Run aborted: %s", reason)
        self._report.append(reason)

    def _transition(self, new_state: EngineState) -> None:
        if new_state is not self.engine_state:
            logger.debug("Engine state %s -> %s", self.engine_state.value, new_state.value)
            self.engine_state = new_state


_ABORT_STATUS: dict[type, RunStatus] = {
    LoopDetected: RunStatus.LOOP_DETECTED,
    TurnsExhausted: RunStatus.TURNS_EXHAUSTED,
    TimeBudgetExceeded: RunStatus.TIME_BUDGET_EXCEEDED,
}
