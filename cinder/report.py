"""Error types and per-session usage accounting."""

import json
import time
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (unknown model, missing API key, etc.)."""


class ProviderError(AgentError):
    """Raised when the model provider call fails (transport or HTTP error)."""


class QuotaExceeded(AgentError):
    """Raised when the quota tracker refuses a request before it is sent."""

    def __init__(self, reason: str):
        super().__init__(f"Quota limit exceeded: {reason}")
        self.reason = reason


class IterationLimitExceeded(AgentError):
    """Raised when the loop never reached a final answer."""

    def __init__(self, max_iterations: int):
        super().__init__(
            f"Exceeded maximum tool iterations ({max_iterations}) without a final answer."
        )
        self.max_iterations = max_iterations


class Cancelled(AgentError):
    """Raised when a run observes a cancellation request."""

    def __init__(self, message: str = "run cancelled"):
        super().__init__(message)


class ToolError(AgentError):
    """Raised by tool implementations. Always recoverable inside the loop."""


def _diff_lines(before: str | None, after: str) -> tuple[int, int]:
    if before is None:
        return len(after.split("\n")), 0
    before_count = len(before.split("\n"))
    after_count = len(after.split("\n"))
    return max(after_count - before_count, 0), max(before_count - after_count, 0)


class SessionTracker:
    """Accumulates API and tool activity for the end-of-session summary."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self.started_at = clock()
        self.api_calls = 0
        self.api_duration = 0.0
        self.tool_counts: dict[str, int] = {}
        self.tool_failures: dict[str, int] = {}
        self.files_changed: set[str] = set()
        self.lines_added = 0
        self.lines_removed = 0
        self.tokens_used = 0

    def record_api_call(self, duration: float, tokens: int = 0) -> None:
        self.api_calls += 1
        self.api_duration += duration
        self.tokens_used += tokens

    def record_tool_call(self, name: str, succeeded: bool = True) -> None:
        self.tool_counts[name] = self.tool_counts.get(name, 0) + 1
        if not succeeded:
            self.tool_failures[name] = self.tool_failures.get(name, 0) + 1

    def record_file_change(self, path: str, before: str | None, after: str) -> None:
        self.files_changed.add(path)
        added, removed = _diff_lines(before, after)
        self.lines_added += added
        self.lines_removed += removed

    def wall_duration(self) -> float:
        return self._clock() - self.started_at

    def build_summary(self, model: str) -> str:
        tool_lines = [
            f"    {name}: {count}" for name, count in sorted(self.tool_counts.items())
        ]
        lines = [
            "Session summary:",
            f"  Total duration (API):  {self.api_duration:.1f}s",
            f"  Total duration (wall): {self.wall_duration():.1f}s",
            f"  Total code changes:    {self.lines_added} lines added, "
            f"{self.lines_removed} lines removed",
            f"  Files changed:         {len(self.files_changed)}",
            "  Usage by model:",
            f"    {model}:  {self.api_calls} call(s), ~{self.tokens_used} tokens",
        ]
        if tool_lines:
            lines.append("  Tool usage:")
            lines.extend(tool_lines)
        else:
            lines.append("  Tool usage: none")
        return "\n".join(lines)

    def to_dict(self, model: str) -> dict:
        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "model": model,
            "stats": {
                "api_calls": self.api_calls,
                "api_duration_s": round(self.api_duration, 3),
                "wall_duration_s": round(self.wall_duration(), 3),
                "tokens_used": self.tokens_used,
                "tool_calls_by_name": dict(self.tool_counts),
                "tool_failures_by_name": dict(self.tool_failures),
                "files_changed": sorted(self.files_changed),
                "lines_added": self.lines_added,
                "lines_removed": self.lines_removed,
            },
        }

    def write(self, path: str, model: str) -> None:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(model), f, indent=2)
            f.write("\n")
