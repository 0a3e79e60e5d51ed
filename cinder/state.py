"""Per-session preferences: reasoning mode, permissions, approvals, focus files."""

from .parser import ToolCall
from .tools import SENSITIVE_TOOLS

REASONING_DESCRIPTIONS = {
    "fast": "Use shallow reasoning passes to minimize latency; prefer single tool calls when safe.",
    "balanced": "Use a balanced approach between speed and rigor.",
    "thorough": "Use exhaustive reasoning with multi-step plans and redundant verification when feasible.",
}

REASONING_MODES = tuple(REASONING_DESCRIPTIONS)
PERMISSION_MODES = ("interactive", "auto-accept", "yolo")
APPROVAL_SUBJECTS = tuple(sorted(SENSITIVE_TOOLS))


class SessionState:
    def __init__(self, model: str, custom_instructions: str | None = None):
        self.model = model
        self.custom_instructions = custom_instructions
        self.reasoning = "balanced"
        self.permission_mode = "interactive"
        self._auto = {subject: False for subject in APPROVAL_SUBJECTS}
        self._mentions: dict[str, None] = {}

    # -- permissions --

    def set_permission_mode(self, mode: str) -> None:
        if mode not in PERMISSION_MODES:
            raise ValueError(
                f"unknown permission mode {mode!r}; expected one of {', '.join(PERMISSION_MODES)}"
            )
        self.permission_mode = mode
        if mode == "yolo":
            for subject in self._auto:
                self._auto[subject] = True

    @property
    def yolo(self) -> bool:
        return self.permission_mode == "yolo"

    def set_approval(self, subject: str, auto: bool) -> None:
        if subject not in self._auto:
            raise ValueError(
                f"unknown approval subject {subject!r}; expected one of {', '.join(APPROVAL_SUBJECTS)}"
            )
        self._auto[subject] = auto

    def is_auto_approved(self, subject: str) -> bool:
        if self.permission_mode in ("auto-accept", "yolo"):
            return True
        return self._auto.get(subject, False)

    def approvals_summary(self) -> str:
        return ", ".join(
            f"{subject}: {'auto' if self.is_auto_approved(subject) else 'ask'}"
            for subject in APPROVAL_SUBJECTS
        )

    # -- reasoning --

    def set_reasoning(self, mode: str) -> None:
        if mode not in REASONING_DESCRIPTIONS:
            raise ValueError(
                f"unknown reasoning mode {mode!r}; expected one of {', '.join(REASONING_MODES)}"
            )
        self.reasoning = mode

    def reasoning_description(self) -> str:
        return REASONING_DESCRIPTIONS[self.reasoning]

    # -- mentions --

    def add_mention(self, path: str) -> None:
        path = path.strip()
        if path:
            self._mentions[path] = None

    def clear_mentions(self) -> None:
        self._mentions.clear()

    def mentions(self) -> list[str]:
        return list(self._mentions)


class ApprovalPolicy:
    """Approval gate for sensitive tools.

    `confirm` is called with the ToolCall when the session does not
    auto-approve it; without a confirm callback, sensitive calls are refused.
    """

    def __init__(self, state: SessionState, confirm=None):
        self.state = state
        self.confirm = confirm

    def __call__(self, call: ToolCall) -> bool:
        if call.name not in SENSITIVE_TOOLS:
            return True
        if self.state.is_auto_approved(call.name):
            return True
        if self.confirm is None:
            return False
        return bool(self.confirm(call))
