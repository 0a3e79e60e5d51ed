"""Tests for cinder.tools: the tool catalog and its executor."""

import sys

import pytest

from cinder.parser import ToolCall
from cinder.report import SessionTracker, ToolError
from cinder.tools import (
    DEFAULT_BASH_PATTERNS,
    ToolRegistry,
    command_allowed,
    safe_resolve,
    split_restricted,
)


def _call(name, **args):
    return ToolCall(id="c1", name=name, input=args)


@pytest.fixture
def registry(tmp_path):
    return ToolRegistry(str(tmp_path), tracker=SessionTracker())


# ---------------------------------------------------------------------------
# Path containment
# ---------------------------------------------------------------------------


class TestSafeResolve:
    def test_relative_inside(self, tmp_path):
        assert safe_resolve("a/b.txt", str(tmp_path)) == tmp_path.resolve() / "a" / "b.txt"

    def test_parent_escape(self, tmp_path):
        with pytest.raises(ToolError, match="outside base directory"):
            safe_resolve("../etc/passwd", str(tmp_path))

    def test_absolute_escape(self, tmp_path):
        with pytest.raises(ToolError, match="outside base directory"):
            safe_resolve("/etc/passwd", str(tmp_path))

    @pytest.mark.skipif(sys.platform == "win32", reason="symlinks")
    def test_symlink_escape(self, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        base = tmp_path / "base"
        base.mkdir()
        (base / "link").symlink_to(outside)
        with pytest.raises(ToolError):
            safe_resolve("link/x.txt", str(base))


# ---------------------------------------------------------------------------
# read_file / write_file
# ---------------------------------------------------------------------------


class TestReadFile:
    def test_full_file(self, tmp_path, registry):
        (tmp_path / "a.py").write_text("one\ntwo\nthree")
        out = registry.execute(_call("read_file", path="a.py"))
        assert out == "FILE: a.py\nLINES: 1-3\n```\none\ntwo\nthree\n```"

    def test_line_range(self, tmp_path, registry):
        (tmp_path / "a.py").write_text("one\ntwo\nthree\nfour")
        out = registry.execute(_call("read_file", path="a.py", start_line=2, end_line=3))
        assert "LINES: 2-3" in out
        assert "two\nthree" in out
        assert "four" not in out

    def test_missing(self, registry):
        with pytest.raises(ToolError, match="does not exist"):
            registry.execute(_call("read_file", path="nope.py"))

    def test_directory(self, tmp_path, registry):
        (tmp_path / "sub").mkdir()
        with pytest.raises(ToolError, match="use list_directory"):
            registry.execute(_call("read_file", path="sub"))

    def test_binary(self, tmp_path, registry):
        (tmp_path / "blob.bin").write_bytes(b"\x00\x01\x02")
        with pytest.raises(ToolError, match="binary file"):
            registry.execute(_call("read_file", path="blob.bin"))

    def test_missing_path_argument(self, registry):
        with pytest.raises(ToolError, match="non-empty string for path"):
            registry.execute(_call("read_file"))

    def test_non_numeric_line(self, tmp_path, registry):
        (tmp_path / "a.py").write_text("x")
        with pytest.raises(ToolError, match="numeric"):
            registry.execute(_call("read_file", path="a.py", start_line="two"))


class TestWriteFile:
    def test_create(self, tmp_path, registry):
        out = registry.execute(_call("write_file", path="src/new.py", content="X = 1\n"))
        assert (tmp_path / "src" / "new.py").read_text() == "X = 1\n"
        assert out.startswith("Wrote src/new.py (6 chars).")
        assert "+X = 1" in out
        assert registry.tracker.files_changed == {"src/new.py"}
        assert registry.tracker.lines_added > 0

    def test_overwrite_shows_diff(self, tmp_path, registry):
        (tmp_path / "a.txt").write_text("old\n")
        out = registry.execute(_call("write_file", path="a.txt", content="new\n"))
        assert "-old" in out
        assert "+new" in out

    def test_unchanged(self, tmp_path, registry):
        (tmp_path / "a.txt").write_text("same")
        out = registry.execute(_call("write_file", path="a.txt", content="same"))
        assert "(no textual changes)" in out

    def test_content_must_be_string(self, registry):
        with pytest.raises(ToolError, match="string for content"):
            registry.execute(_call("write_file", path="a.txt", content=5))

    def test_escape_refused(self, tmp_path, registry):
        with pytest.raises(ToolError):
            registry.execute(_call("write_file", path="../evil.txt", content="x"))
        assert not (tmp_path.parent / "evil.txt").exists()


# ---------------------------------------------------------------------------
# list_directory / search_text
# ---------------------------------------------------------------------------


class TestListDirectory:
    def test_depth_limit(self, tmp_path, registry):
        (tmp_path / "a" / "b" / "c").mkdir(parents=True)
        (tmp_path / "a" / "b" / "c" / "deep.txt").write_text("x")
        (tmp_path / "a" / "one.txt").write_text("x")
        (tmp_path / "top.txt").write_text("x")
        out = registry.execute(_call("list_directory", path="."))
        assert out.startswith("Directory listing for .:")
        assert "- a/" in out
        assert "- a/b/" in out
        assert "- a/one.txt" in out
        assert "- top.txt" in out
        assert "deep.txt" not in out
        assert "a/b/c/" not in out

    def test_skips_noise_dirs(self, tmp_path, registry):
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "HEAD").write_text("x")
        (tmp_path / "main.py").write_text("x")
        out = registry.execute(_call("list_directory", path="."))
        assert ".git" not in out

    def test_empty(self, tmp_path, registry):
        (tmp_path / "empty").mkdir()
        assert registry.execute(_call("list_directory", path="empty")) == (
            "No files found under empty"
        )

    def test_not_a_directory(self, tmp_path, registry):
        (tmp_path / "f.txt").write_text("x")
        with pytest.raises(ToolError, match="not a directory"):
            registry.execute(_call("list_directory", path="f.txt"))


class TestSearchText:
    def test_matches(self, tmp_path, registry):
        (tmp_path / "a.py").write_text("import os\nclass AgentLoop:\n    pass\n")
        out = registry.execute(_call("search_text", query="Agent\\w+"))
        assert out == 'Results for "Agent\\w+":\na.py:2: class AgentLoop:'

    def test_glob_filter(self, tmp_path, registry):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "a.py").write_text("needle")
        (tmp_path / "notes.md").write_text("needle")
        out = registry.execute(_call("search_text", query="needle", glob="src/*.py"))
        assert "src/a.py:1" in out
        assert "notes.md" not in out

    def test_max_results(self, tmp_path, registry):
        (tmp_path / "a.txt").write_text("\n".join(["hit"] * 20))
        out = registry.execute(_call("search_text", query="hit", max_results=3))
        assert len(out.splitlines()) == 4

    def test_no_matches(self, tmp_path, registry):
        (tmp_path / "a.py").write_text("nothing")
        assert registry.execute(_call("search_text", query="zzz")) == (
            'No matches for "zzz" using pattern "**/*".'
        )

    def test_invalid_regex(self, registry):
        with pytest.raises(ToolError, match="invalid regex"):
            registry.execute(_call("search_text", query="("))


# ---------------------------------------------------------------------------
# run_bash
# ---------------------------------------------------------------------------


class TestCommandAllowed:
    def test_defaults(self):
        assert command_allowed("git status", DEFAULT_BASH_PATTERNS)
        assert command_allowed("pytest -q tests", DEFAULT_BASH_PATTERNS)
        assert command_allowed("  ls -la  ", DEFAULT_BASH_PATTERNS)
        assert not command_allowed("rm -rf /", DEFAULT_BASH_PATTERNS)
        assert not command_allowed("curl http://x", DEFAULT_BASH_PATTERNS)


class TestSplitRestricted:
    def test_plain_command(self):
        assert split_restricted("git log -n 3") == ["git", "log", "-n", "3"]

    def test_quoted_argument(self):
        assert split_restricted('grep -n "two words" a.txt') == [
            "grep",
            "-n",
            "two words",
            "a.txt",
        ]

    @pytest.mark.parametrize(
        "command",
        [
            "ls; touch x",
            "ls && touch x",
            "ls | sh",
            "cat `whoami`",
            "cat $(whoami)",
            "ls > out.txt",
            "cat < in.txt",
            "ls\ntouch x",
        ],
    )
    def test_shell_syntax_rejected(self, command):
        with pytest.raises(ToolError, match="shell syntax"):
            split_restricted(command)

    def test_path_command_rejected(self):
        with pytest.raises(ToolError, match="bare name"):
            split_restricted("./ls")

    def test_unbalanced_quote(self):
        with pytest.raises(ToolError, match="cannot parse command"):
            split_restricted('cat "a.txt')


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell")
class TestRunBash:
    def test_allowed_command(self, tmp_path, registry):
        (tmp_path / "hello.txt").write_text("hi")
        out = registry.execute(_call("run_bash", command="ls"))
        assert "hello.txt" in out

    def test_disallowed_command(self, registry):
        with pytest.raises(ToolError, match='Command "rm -rf x" is not allowed'):
            registry.execute(_call("run_bash", command="rm -rf x"))

    def test_unrestricted(self, tmp_path):
        registry = ToolRegistry(str(tmp_path), unrestricted=True)
        assert registry.execute(_call("run_bash", command="echo hello")) == "hello"

    def test_chained_command_not_run(self, tmp_path, registry):
        with pytest.raises(ToolError, match="shell syntax"):
            registry.execute(_call("run_bash", command="ls; touch pwned"))
        assert not (tmp_path / "pwned").exists()

    def test_substitution_not_run(self, tmp_path, registry):
        with pytest.raises(ToolError, match="shell syntax"):
            registry.execute(_call("run_bash", command="cat $(touch pwned)"))
        assert not (tmp_path / "pwned").exists()

    def test_restricted_runs_without_shell(self, tmp_path):
        registry = ToolRegistry(str(tmp_path), allowed_commands=["echo *"])
        out = registry.execute(_call("run_bash", command="echo $HOME"))
        assert out == "$HOME"

    def test_unrestricted_allows_shell_syntax(self, tmp_path):
        registry = ToolRegistry(str(tmp_path), unrestricted=True)
        registry.execute(_call("run_bash", command="echo a > out.txt && echo b"))
        assert (tmp_path / "out.txt").read_text() == "a\n"

    def test_exit_code_reported(self, tmp_path):
        registry = ToolRegistry(str(tmp_path), unrestricted=True)
        out = registry.execute(_call("run_bash", command="exit 3"))
        assert out == "Exit code: 3"

    def test_timeout(self, tmp_path):
        registry = ToolRegistry(str(tmp_path), allowed_commands=["sleep *"])
        with pytest.raises(ToolError, match="timed out after 1s"):
            registry.execute(_call("run_bash", command="sleep 5", timeout=1))

    def test_runs_in_base_dir(self, tmp_path):
        registry = ToolRegistry(str(tmp_path), allowed_commands=["pwd"])
        assert registry.execute(_call("run_bash", command="pwd")) == str(tmp_path.resolve())


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_names(self, registry):
        assert registry.names() == [
            "read_file",
            "write_file",
            "list_directory",
            "search_text",
            "run_bash",
        ]

    def test_summaries(self, registry):
        text = registry.summaries()
        assert "• read_file: Read the contents" in text
        assert "  - path (required): Relative file path to read" in text
        assert "examples: " in text

    def test_unknown_tool(self, registry):
        with pytest.raises(ToolError, match="Unknown tool: teleport"):
            registry.execute(_call("teleport"))

    def test_tracker_counts(self, tmp_path, registry):
        (tmp_path / "a.txt").write_text("x")
        registry.execute(_call("read_file", path="a.txt"))
        with pytest.raises(ToolError):
            registry.execute(_call("read_file", path="missing.txt"))
        assert registry.tracker.tool_counts == {"read_file": 2}
        assert registry.tracker.tool_failures == {"read_file": 1}
