"""Tool catalog and executor for the agent loop.

Every tool takes a plain dict of inputs and returns a string. Invalid input
or a failed operation raises ToolError; the loop reports the message back to
the model and keeps going.
"""

import difflib
import fnmatch
import os
import re
import shlex
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

from .parser import ToolCall
from .report import SessionTracker, ToolError

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_LIST_RESULTS = 200
DEFAULT_SEARCH_RESULTS = 10
MAX_SEARCH_RESULTS = 100
DEFAULT_LIST_DEPTH = 2
DEFAULT_BASH_TIMEOUT = 30
MAX_BASH_TIMEOUT = 120
MAX_COMMAND_OUTPUT = 1 * 1024 * 1024  # 1MB

SHELL_METACHARACTERS = (";", "&", "|", "`", "$(", ">", "<", "\n")

SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", ".cinder"}

TEXT_EXTENSIONS = {
    ".py", ".pyi", ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".json",
    ".md", ".rst", ".txt", ".toml", ".cfg", ".ini", ".yml", ".yaml", ".rb",
    ".go", ".rs", ".java", ".kt", ".swift", ".c", ".h", ".cc", ".cpp", ".hpp",
    ".cs", ".php", ".html", ".css", ".scss", ".less", ".sh", ".sql",
}

DEFAULT_BASH_PATTERNS = (
    "git status*",
    "git diff*",
    "git log*",
    "git rev-parse*",
    "ls*",
    "pwd",
    "cat *",
    "head *",
    "tail *",
    "wc *",
    "python*",
    "pytest*",
    "pip list*",
    "pip show*",
    "npm*",
    "yarn*",
    "pnpm*",
    "npx*",
    "node*",
    "go *",
    "cargo *",
    "make*",
)

SENSITIVE_TOOLS = frozenset({"write_file", "run_bash"})


def safe_resolve(file_path: str, base_dir: str) -> Path:
    """Resolve a path against base_dir, refusing anything that escapes it.

    Symlinks are resolved on both sides before the containment check.

    Raises:
        ToolError: If the resolved path is outside base_dir.
    """
    base = Path(base_dir).resolve()
    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()
    if not resolved.is_relative_to(base):
        raise ToolError(
            f"Path {file_path!r} resolves to {resolved}, "
            f"which is outside base directory {base}"
        )
    return resolved


def _require_str(args: dict, key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ToolError(f"expected non-empty string for {key}")
    return value


def _optional_int(args: dict, key: str, default: int | None) -> int | None:
    value = args.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ToolError(f"expected numeric value for {key}")
    return int(value)


def _is_binary(path: Path) -> bool:
    with open(path, "rb") as f:
        return b"\x00" in f.read(BINARY_CHECK_BYTES)


def _relative(path: Path, base: Path) -> str:
    try:
        return path.relative_to(base).as_posix()
    except ValueError:
        return str(path)


def _walk_files(root: Path):
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if d not in SKIP_DIRS)
        for filename in sorted(files):
            yield Path(dirpath) / filename


def unified_diff(before: str | None, after: str, path: str) -> str:
    lines = difflib.unified_diff(
        (before or "").splitlines(),
        after.splitlines(),
        fromfile=f"a/{path}" if before is not None else "/dev/null",
        tofile=f"b/{path}",
        lineterm="",
    )
    return "\n".join(lines)


# -- Tool implementations ----------------------------------------------------


def _read_file(args: dict, base_dir: str) -> str:
    path = _require_str(args, "path")
    resolved = safe_resolve(path, base_dir)
    if not resolved.exists():
        raise ToolError(f"path does not exist: {path}")
    if resolved.is_dir():
        raise ToolError(f"path is a directory, use list_directory: {path}")
    if _is_binary(resolved):
        raise ToolError(f"binary file detected: {path}")
    try:
        text = resolved.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ToolError(f"failed to decode {path} as UTF-8: {exc}") from exc

    lines = text.split("\n")
    start = max(_optional_int(args, "start_line", 1), 1)
    end = _optional_int(args, "end_line", len(lines))
    end = min(end, len(lines))

    output_parts = []
    total_bytes = 0
    truncated = False
    for line in lines[start - 1 : end]:
        if len(line) > MAX_LINE_LENGTH:
            line = line[:MAX_LINE_LENGTH]
        encoded_len = len(line.encode("utf-8")) + 1
        if total_bytes + encoded_len > MAX_OUTPUT_BYTES:
            truncated = True
            break
        output_parts.append(line)
        total_bytes += encoded_len

    shown_end = start + len(output_parts) - 1
    result = [f"FILE: {path}", f"LINES: {start}-{max(shown_end, start - 1)}", "```"]
    result.extend(output_parts)
    result.append("```")
    if truncated:
        result.append(f"[truncated at 50KB, use start_line={shown_end + 1} to continue]")
    return "\n".join(result)


def _write_file(args: dict, base_dir: str, tracker: SessionTracker | None) -> str:
    path = _require_str(args, "path")
    content = args.get("content")
    if not isinstance(content, str):
        raise ToolError("expected string for content")
    resolved = safe_resolve(path, base_dir)
    if resolved.is_dir():
        raise ToolError(f"path is a directory: {path}")

    previous = None
    if resolved.exists():
        try:
            previous = resolved.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            previous = None

    resolved.parent.mkdir(parents=True, exist_ok=True)
    resolved.write_text(content, encoding="utf-8")
    if tracker is not None:
        tracker.record_file_change(path, previous, content)

    diff = unified_diff(previous, content, path)
    return "\n".join(
        [
            f"Wrote {path} ({len(content)} chars).",
            "```diff",
            diff or "(no textual changes)",
            "```",
        ]
    )


def _list_directory(args: dict, base_dir: str) -> str:
    path = args.get("path") or "."
    if not isinstance(path, str):
        raise ToolError("expected string for path")
    depth = _optional_int(args, "depth", DEFAULT_LIST_DEPTH)
    if depth < 1:
        raise ToolError("depth must be at least 1")

    root = safe_resolve(path, base_dir)
    if not root.exists():
        raise ToolError(f"path does not exist: {path}")
    if not root.is_dir():
        raise ToolError(f"path is not a directory: {path}")

    base = Path(base_dir).resolve()
    entries: list[str] = []
    truncated = False
    for dirpath, dirs, files in os.walk(root):
        current = Path(dirpath)
        level = len(current.relative_to(root).parts)
        dirs[:] = sorted(d for d in dirs if d not in SKIP_DIRS)
        names = [d + "/" for d in dirs]
        if level + 1 >= depth:
            dirs[:] = []
        names.extend(sorted(files))
        for name in names:
            if len(entries) >= MAX_LIST_RESULTS:
                truncated = True
                break
            entries.append(_relative(current / name.rstrip("/"), base) + ("/" if name.endswith("/") else ""))
        if truncated:
            break

    if not entries:
        return f"No files found under {path}"
    lines = [f"Directory listing for {path}:"]
    lines.extend(f"- {entry}" for entry in entries)
    if truncated:
        lines.append(f"(truncated at {MAX_LIST_RESULTS} entries, narrow the path)")
    return "\n".join(lines)


def _search_text(args: dict, base_dir: str) -> str:
    query = _require_str(args, "query")
    include = args.get("glob")
    if include is not None and not isinstance(include, str):
        raise ToolError("expected string for glob")
    limit = _optional_int(args, "max_results", DEFAULT_SEARCH_RESULTS)
    limit = max(1, min(limit, MAX_SEARCH_RESULTS))

    try:
        regex = re.compile(query)
    except re.error as exc:
        raise ToolError(f"invalid regex {query!r}: {exc}") from exc

    base = Path(base_dir).resolve()
    matches: list[str] = []
    for filepath in _walk_files(base):
        rel = _relative(filepath, base)
        if include and not fnmatch.fnmatch(rel, include):
            continue
        if filepath.suffix.lower() not in TEXT_EXTENSIONS:
            continue
        if not filepath.resolve().is_relative_to(base):
            continue
        try:
            if _is_binary(filepath):
                continue
            text = filepath.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError):
            continue
        for line_no, line in enumerate(text.splitlines(), start=1):
            if regex.search(line):
                matches.append(f"{rel}:{line_no}: {line.strip()[:MAX_LINE_LENGTH]}")
                if len(matches) >= limit:
                    break
        if len(matches) >= limit:
            break

    if not matches:
        return f'No matches for "{query}" using pattern "{include or "**/*"}".'
    return "\n".join([f'Results for "{query}":', *matches])


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit."""
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        pass


def _capture_process(proc: subprocess.Popen, timeout: int) -> str:
    """Collect combined output from a running subprocess, enforcing timeout."""
    output_chunks: list[bytes] = []
    output_total = 0
    output_truncated = False

    def _reader():
        nonlocal output_total, output_truncated
        try:
            while True:
                chunk = proc.stdout.read(4096)
                if not chunk:
                    break
                if output_truncated:
                    continue  # keep draining to prevent pipe backpressure
                remaining = MAX_COMMAND_OUTPUT - output_total
                output_chunks.append(chunk[:remaining])
                output_total += len(output_chunks[-1])
                if output_total >= MAX_COMMAND_OUTPUT:
                    output_truncated = True
        except (OSError, ValueError):
            pass  # pipe closed after kill

    reader_thread = threading.Thread(target=_reader, daemon=True)
    reader_thread.start()

    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        _kill_process_tree(proc)
        reader_thread.join(timeout=2)
        proc.stdout.close()
        raise ToolError(f"command timed out after {timeout}s")

    reader_thread.join(timeout=2)
    proc.stdout.close()

    output = b"".join(output_chunks).decode("utf-8", errors="replace").strip()
    parts: list[str] = []
    if proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")
    if output:
        if len(output.encode("utf-8")) > MAX_OUTPUT_BYTES:
            output = output.encode("utf-8")[:MAX_OUTPUT_BYTES].decode(
                "utf-8", errors="replace"
            )
            output_truncated = True
        parts.append(output)
    if output_truncated:
        parts.append("[output truncated at 50KB]")
    return "\n".join(parts) if parts else "(no output)"


def command_allowed(command: str, patterns) -> bool:
    return any(fnmatch.fnmatchcase(command.strip(), p) for p in patterns)


def split_restricted(command: str) -> list[str]:
    """Split a restricted command into argv, refusing shell syntax.

    Restricted commands run without a shell; chaining, redirection and
    substitution operators are rejected.
    """
    for token in SHELL_METACHARACTERS:
        if token in command:
            raise ToolError(
                f"shell syntax ({token!r}) is not allowed in restricted mode; "
                "run one command at a time"
            )
    try:
        argv = shlex.split(command)
    except ValueError as e:
        raise ToolError(f"cannot parse command: {e}") from e
    if not argv:
        raise ToolError("command is empty")
    if "/" in argv[0] or "\\" in argv[0]:
        raise ToolError(f"command must be a bare name, not a path: {argv[0]!r}")
    return argv


def _run_bash(args: dict, base_dir: str, patterns, unrestricted: bool) -> str:
    command = _require_str(args, "command")
    if not unrestricted and not command_allowed(command, patterns):
        raise ToolError(
            f'Command "{command}" is not allowed. '
            f"Allowed patterns: {', '.join(patterns)}"
        )
    timeout = _optional_int(args, "timeout", DEFAULT_BASH_TIMEOUT)
    timeout = max(1, min(timeout, MAX_BASH_TIMEOUT))

    if not unrestricted:
        shell_cmd = split_restricted(command)
    elif sys.platform == "win32":
        shell_cmd = ["cmd.exe", "/c", command]
    else:
        shell_cmd = ["/bin/sh", "-c", command]

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        cwd=base_dir,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True
    try:
        proc = subprocess.Popen(shell_cmd, **popen_kwargs)
    except OSError as e:
        raise ToolError(f"failed to start shell command: {e}") from e
    return _capture_process(proc, timeout)


# -- Registry ----------------------------------------------------------------


@dataclass(frozen=True)
class ToolParam:
    name: str
    description: str
    required: bool = False


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    params: tuple[ToolParam, ...]
    examples: tuple[str, ...] = field(default_factory=tuple)


TOOL_SPECS = (
    ToolSpec(
        "read_file",
        "Read the contents of a text file relative to the project root.",
        (
            ToolParam("path", "Relative file path to read", required=True),
            ToolParam("start_line", "Optional 1-based start line for focused reading"),
            ToolParam("end_line", "Optional 1-based end line for focused reading"),
        ),
        ('{"path":"src/main.py"}', '{"path":"README.md","start_line":1,"end_line":80}'),
    ),
    ToolSpec(
        "write_file",
        "Create or overwrite a file with new content. Always provide the full desired content.",
        (
            ToolParam("path", "Relative file path to write", required=True),
            ToolParam("content", "Complete file content to write", required=True),
        ),
        ('{"path":"src/util.py","content":"X = 1\\n"}',),
    ),
    ToolSpec(
        "list_directory",
        "List files within a directory to understand structure.",
        (
            ToolParam("path", "Directory path relative to project root", required=True),
            ToolParam("depth", f"Optional depth (default {DEFAULT_LIST_DEPTH})"),
        ),
        ('{"path":"src","depth":2}',),
    ),
    ToolSpec(
        "search_text",
        "Search text files for a regular expression to find references or usages.",
        (
            ToolParam("query", "Regular expression to search for", required=True),
            ToolParam("glob", "Optional glob pattern to narrow files (e.g., src/**/*.py)"),
            ToolParam("max_results", f"Optional max matches (default {DEFAULT_SEARCH_RESULTS})"),
        ),
        ('{"query":"AgentLoop"}', '{"query":"TODO","glob":"src/*.py","max_results":5}'),
    ),
    ToolSpec(
        "run_bash",
        "Execute a command (git status, ls, pytest, etc.). Returns combined stdout/stderr. "
        "Pipes, redirection and chaining are only available in yolo mode.",
        (
            ToolParam("command", "Command to execute", required=True),
            ToolParam("timeout", f"Optional timeout in seconds (default {DEFAULT_BASH_TIMEOUT})"),
        ),
        ('{"command":"git status"}', '{"command":"pytest -q"}'),
    ),
)


class ToolRegistry:
    """Executes parsed tool calls inside a base directory."""

    def __init__(
        self,
        base_dir: str,
        *,
        allowed_commands=DEFAULT_BASH_PATTERNS,
        unrestricted: bool = False,
        tracker: SessionTracker | None = None,
        specs=TOOL_SPECS,
    ):
        self.base_dir = str(Path(base_dir).resolve())
        self.allowed_commands = tuple(allowed_commands)
        self.unrestricted = unrestricted
        self.tracker = tracker
        self.specs = {spec.name: spec for spec in specs}
        self.last_elapsed = 0.0

    def names(self) -> list[str]:
        return list(self.specs)

    def summaries(self) -> str:
        """Render the catalog for the system prompt."""
        blocks = []
        for spec in self.specs.values():
            lines = [f"• {spec.name}: {spec.description}"]
            for param in spec.params:
                required = " (required)" if param.required else ""
                lines.append(f"  - {param.name}{required}: {param.description}")
            if spec.examples:
                lines.append(f"  examples: {' | '.join(spec.examples)}")
            blocks.append("\n".join(lines))
        return "\n\n".join(blocks)

    def execute(self, call: ToolCall) -> str:
        if call.name not in self.specs:
            raise ToolError(f"Unknown tool: {call.name}")
        args = call.input
        t0 = time.monotonic()
        succeeded = False
        try:
            if call.name == "read_file":
                result = _read_file(args, self.base_dir)
            elif call.name == "write_file":
                result = _write_file(args, self.base_dir, self.tracker)
            elif call.name == "list_directory":
                result = _list_directory(args, self.base_dir)
            elif call.name == "search_text":
                result = _search_text(args, self.base_dir)
            elif call.name == "run_bash":
                result = _run_bash(
                    args, self.base_dir, self.allowed_commands, self.unrestricted
                )
            else:
                raise ToolError(f"Tool {call.name} has no implementation")
            succeeded = True
            return result
        except OSError as e:
            raise ToolError(str(e)) from e
        finally:
            self.last_elapsed = time.monotonic() - t0
            if self.tracker is not None:
                self.tracker.record_tool_call(call.name, succeeded)
