"""System prompt assembly and project instruction loading."""

from pathlib import Path

from . import fmt
from .state import SessionState
from .tools import ToolRegistry

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
MAX_INSTRUCTIONS_CHARS = 10_000

INSTRUCTION_FILES = (
    ("AGENTS.md", "agent-instructions"),
    ("CLAUDE.md", "project-instructions"),
)


def load_instructions(base_dir: str, verbose: bool = False) -> tuple[str, list[str]]:
    """Load AGENTS.md and/or CLAUDE.md from base_dir, if present.

    Returns (combined_text, filenames_loaded) where combined_text is
    XML-tagged sections (or "" if none found).
    """
    sections = []
    loaded: list[str] = []
    for filename, tag in INSTRUCTION_FILES:
        path = Path(base_dir).resolve() / filename
        if not path.is_file():
            continue
        try:
            file_size = path.stat().st_size
            with path.open(encoding="utf-8", errors="replace") as f:
                content = f.read(MAX_INSTRUCTIONS_CHARS + 1)
        except OSError:
            continue
        if len(content) > MAX_INSTRUCTIONS_CHARS:
            content = (
                content[:MAX_INSTRUCTIONS_CHARS]
                + f"\n[truncated: {filename} exceeds {MAX_INSTRUCTIONS_CHARS} character limit]"
            )
        if verbose:
            fmt.info(f"Loaded {filename} ({file_size} bytes) from {path.parent}")
        sections.append(f"<{tag}>\n{content}\n</{tag}>")
        loaded.append(filename)
    return "\n\n".join(sections), loaded


def build_system_prompt(
    registry: ToolRegistry,
    state: SessionState,
    instructions: str = "",
    base_prompt: str | None = None,
) -> str:
    """Compose the full system prompt from the base text and session state."""
    if base_prompt is None:
        base_prompt = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8")

    mentions = state.mentions()
    parts = [
        base_prompt.strip(),
        f"Available tools:\n{registry.summaries()}",
        f"Reasoning preference ({state.reasoning}): {state.reasoning_description()}",
        f"Tool approval policy (enforced by the host): {state.approvals_summary()}. "
        "Do not attempt to bypass host restrictions.",
    ]
    if mentions:
        parts.append("Focus files:\n" + "\n".join(f"- {p}" for p in mentions))
    if instructions:
        parts.append(instructions.strip())
    if state.custom_instructions:
        parts.append(f"Additional user instructions:\n{state.custom_instructions.strip()}")
    parts.append(
        "Always cite the tools you used in the final summary "
        "(e.g., read_file(src/main.py), run_bash(pytest -q))."
    )
    return "\n\n".join(parts)
