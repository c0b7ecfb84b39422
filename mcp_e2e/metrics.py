"""Per-completion token and latency accounting for a run."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class CompletionRecord:
    turn: int
    prompt_tokens: int = 0
    completion_tokens: int = 0
    tool_calls: int = 0
    latency_s: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class UsageLedger:
    """Accumulates one record per completion call."""

    records: list[CompletionRecord] = field(default_factory=list)

    def add_call(self, turn: int, usage: dict[str, Any], tool_calls: int, latency_s: float) -> CompletionRecord:
        record = CompletionRecord(
            turn=turn,
            prompt_tokens=int(usage.get("prompt_tokens") or 0),
            completion_tokens=int(usage.get("completion_tokens") or 0),
            tool_calls=tool_calls,
            latency_s=latency_s,
        )
        self.records.append(record)
        return record

    @property
    def calls(self) -> int:
        return len(self.records)

    @property
    def prompt_tokens(self) -> int:
        return sum(r.prompt_tokens for r in self.records)

    @property
    def completion_tokens(self) -> int:
        return sum(r.completion_tokens for r in self.records)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @property
    def tool_calls(self) -> int:
        return sum(r.tool_calls for r in self.records)

    @property
    def total_latency_s(self) -> float:
        return round(sum(r.latency_s for r in self.records), 3)

    @property
    def average_latency_s(self) -> float:
        return round(self.total_latency_s / self.calls, 3) if self.records else 0.0

    def summary(self) -> str:
        if not self.records:
            return "No completion calls"
        return (
            f"{self.calls} completion calls, {self.tool_calls} tool calls, "
            f"tokens {self.prompt_tokens} in / {self.completion_tokens} out "
            f"({self.total_tokens} total), "
            f"latency {self.total_latency_s:.2f}s total / {self.average_latency_s:.2f}s avg"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "calls": self.calls,
            "tool_calls": self.tool_calls,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "total_latency_s": self.total_latency_s,
        }
