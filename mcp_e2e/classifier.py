"""Tool outcome classification.

Providers report failure inconsistently: sometimes through ``isError``,
sometimes only as prose inside a successful response, and a success text can
contain the word "error". ``OutcomeClassifier`` turns a tool name, its
arguments, the result text and the run state into one ``ToolCallOutcome``
using an ordered rule table where the first matching rule wins:

    1. interaction tool without a usable snapshot     -> precondition violation
    2. element id that is text, not a snapshot uid    -> precondition violation
    3. error flag / failure phrase, no success phrase -> tool failure
    4. anything else                                  -> success

``precheck`` evaluates only the rules that need no result, so a bad call can
be rejected before it reaches the provider.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from mcp_e2e.config import ToolNames
from mcp_e2e.errors import PreconditionViolation, ToolFailure

UID_PATTERN = re.compile(r"^\d+_\d+$")
"""Shape of element ids issued by page snapshots (e.g. ``1_5``)."""

ERROR_FLAG_PATTERN = re.compile(r'"isError"\s*:\s*true')

NO_SNAPSHOT_PHRASE = "No snapshot found"


class StateView(Protocol):
    """The slice of run state the classifier reads."""

    has_usable_snapshot: bool
    navigation_satisfied: bool


class OutcomeKind(str, enum.Enum):
    SUCCESS = "success"
    TOOL_FAILURE = "tool_failure"
    PRECONDITION_VIOLATION = "precondition_violation"


class ClassifiedReason(str, enum.Enum):
    OK = "ok"
    SNAPSHOT_REQUIRED = "snapshot_required"
    PLACEHOLDER_UID = "placeholder_uid"
    NAVIGATION_REQUIRED = "navigation_required"
    NO_SNAPSHOT = "no_snapshot"
    TOOL_ERROR = "tool_error"
    INVALID_ARGUMENTS = "invalid_arguments"
    PROTOCOL_ERROR = "protocol_error"


@dataclass
class ToolCallOutcome:
    """Classification of one tool call."""

    kind: OutcomeKind
    reason: ClassifiedReason = ClassifiedReason.OK
    message: str = ""
    result_text: str = ""

    @property
    def success(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @classmethod
    def ok(cls, result_text: str) -> "ToolCallOutcome":
        return cls(OutcomeKind.SUCCESS, ClassifiedReason.OK, "", result_text)

    @classmethod
    def failure(
        cls, reason: ClassifiedReason, message: str, result_text: str = "",
    ) -> "ToolCallOutcome":
        return cls(OutcomeKind.TOOL_FAILURE, reason, message, result_text or message)

    @classmethod
    def violation(cls, reason: ClassifiedReason, message: str) -> "ToolCallOutcome":
        return cls(OutcomeKind.PRECONDITION_VIOLATION, reason, message, message)

    def to_exception(self, tool_name: str) -> ToolFailure | None:
        """The recoverable error this outcome stands for, or None on success."""
        if self.success:
            return None
        error_type = PreconditionViolation if self.kind is OutcomeKind.PRECONDITION_VIOLATION else ToolFailure
        return error_type(self.message, tool_name=tool_name, reason=self.reason)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClassifierPolicy:
    """Phrase lists and uid heuristics. Tune per provider version."""

    failure_phrases: tuple[str, ...] = (
        "Timed out after waiting",
        "Cannot read properties of null",
        "Element not found",
        "Failed to execute",
        "Connection refused",
        "No such element",
        NO_SNAPSHOT_PHRASE,
        "stale snapshot",
    )
    general_success_phrases: tuple[str, ...] = (
        "Successfully",
        "successful",
        "completed",
    )
    # Phrases that prove success for a specific tool regardless of error flags.
    tool_success_phrases: dict[str, tuple[str, ...]] = field(default_factory=lambda: {
        "navigate_page": ("Successfully navigated", "Navigation successful"),
        "fill": ("Successfully filled", "Fill successful"),
        "fill_form": ("Successfully filled", "Fill successful"),
        "click": ("Successfully clicked", "Click successful"),
        "take_snapshot": ("Page content",),
        "wait_for": ("Element found",),
    })
    # Response markers that count as success only when no error flag is set.
    tool_response_markers: dict[str, tuple[str, ...]] = field(default_factory=lambda: {
        "navigate_page": ("# navigate_page response",),
        "fill": ("# fill",),
        "fill_form": ("# fill",),
        "click": ("# click response",),
        "take_snapshot": ("# take_snapshot response", "uid="),
        "wait_for": ("# wait_for response", "found"),
    })
    # Characters that mark a uid as prose or a CSS selector.
    placeholder_chars: str = " []()#.>"
    placeholder_keywords: tuple[str, ...] = (
        "button", "textbox", "input", "div", "link", "email", "password",
        "click", "enter", "next", "sign in", "submit", "list item", "containing",
    )
    strict_uid_shape: bool = False


def has_error_flag(result_text: str) -> bool:
    return bool(ERROR_FLAG_PATTERN.search(result_text))


def looks_like_placeholder(uid: str, policy: ClassifierPolicy) -> bool:
    """True when *uid* is descriptive text rather than a snapshot id."""
    if UID_PATTERN.match(uid):
        return False
    if policy.strict_uid_shape:
        return True
    if any(ch in uid for ch in policy.placeholder_chars):
        return True
    lowered = uid.lower()
    return any(keyword in lowered for keyword in policy.placeholder_keywords)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClassifyContext:
    tool_name: str
    arguments: dict[str, Any]
    result_text: str | None
    is_error: bool
    state: StateView
    tools: ToolNames
    policy: ClassifierPolicy


Rule = Callable[[ClassifyContext], "ToolCallOutcome | None"]


def _rule_snapshot_required(ctx: ClassifyContext) -> ToolCallOutcome | None:
    if ctx.result_text is None or ctx.tool_name not in ctx.tools.interactions:
        return None
    if NO_SNAPSHOT_PHRASE in ctx.result_text:
        return ToolCallOutcome.failure(
            ClassifiedReason.NO_SNAPSHOT,
            f"{ctx.tool_name} failed: the provider has no snapshot of the current page. "
            f"Call {ctx.tools.snapshot} first, then retry with a uid from it.",
            ctx.result_text,
        )
    if ctx.state.has_usable_snapshot:
        return None
    return ToolCallOutcome.violation(
        ClassifiedReason.SNAPSHOT_REQUIRED,
        f"{ctx.tool_name} was called without a current page snapshot. "
        f"Call {ctx.tools.snapshot} first and use the uids it returns.",
    )


def _rule_placeholder_uid(ctx: ClassifyContext) -> ToolCallOutcome | None:
    uid = ctx.arguments.get("uid")
    if uid is None:
        return None
    uid_text = str(uid)
    if not looks_like_placeholder(uid_text, ctx.policy):
        return None
    return ToolCallOutcome.violation(
        ClassifiedReason.PLACEHOLDER_UID,
        f"uid={uid_text!r} is not an element id. Element ids look like '1_5' and come from "
        f"{ctx.tools.snapshot}; call it and pick the uid of the element you need.",
    )


def _rule_reported_failure(ctx: ClassifyContext) -> ToolCallOutcome | None:
    text = ctx.result_text
    if text is None:
        return None
    explicit = ctx.is_error or has_error_flag(text)
    phrase = next((p for p in ctx.policy.failure_phrases if p in text), None)
    if not explicit and phrase is None:
        return None
    if _tool_reports_success(ctx.tool_name, text, explicit, ctx.policy):
        return None
    detail = phrase or "the tool reported an error"
    return ToolCallOutcome.failure(
        ClassifiedReason.TOOL_ERROR,
        f"{ctx.tool_name} failed ({detail}). Result: {text[:300]}",
        text,
    )


def _tool_reports_success(tool_name: str, text: str, explicit: bool, policy: ClassifierPolicy) -> bool:
    specific = policy.tool_success_phrases.get(tool_name)
    if specific is None:
        return not explicit and any(p in text for p in policy.general_success_phrases)
    if any(p in text for p in specific):
        return True
    markers = policy.tool_response_markers.get(tool_name, ())
    return not explicit and any(m in text for m in markers)


RULES: tuple[tuple[str, Rule], ...] = (
    ("snapshot_required", _rule_snapshot_required),
    ("placeholder_uid", _rule_placeholder_uid),
    ("reported_failure", _rule_reported_failure),
)
"""Ordered classification rules; first non-None outcome wins."""


class OutcomeClassifier:
    """Applies ``RULES`` in order. Pure: no I/O, no state mutation."""

    def __init__(self, tools: ToolNames | None = None, policy: ClassifierPolicy | None = None) -> None:
        self.tools = tools or ToolNames()
        self.policy = policy or ClassifierPolicy()

    def classify(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        result_text: str,
        state: StateView,
        *,
        is_error: bool = False,
    ) -> ToolCallOutcome:
        ctx = ClassifyContext(tool_name, arguments, result_text, is_error, state, self.tools, self.policy)
        for _name, rule in RULES:
            outcome = rule(ctx)
            if outcome is not None:
                return outcome
        return ToolCallOutcome.ok(result_text)

    def precheck(self, tool_name: str, arguments: dict[str, Any], state: StateView) -> ToolCallOutcome | None:
        """Rules that need no result text. None means the call may be forwarded."""
        ctx = ClassifyContext(tool_name, arguments, None, False, state, self.tools, self.policy)
        for _name, rule in RULES:
            outcome = rule(ctx)
            if outcome is not None:
                return outcome
        return None
