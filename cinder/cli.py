"""Command-line entry point and interactive REPL."""

import argparse
import os
import signal
import sys
from contextlib import contextmanager
from importlib import metadata
from pathlib import Path

from . import fmt
from .agent import LARGE_PASTE_THRESHOLD
from .config import (
    _UNSET,
    apply_config_to_args,
    config_to_session_kwargs,
    generate_config,
    load_config,
)
from .models import AVAILABLE_MODELS, default_model_for
from .report import AgentError, Cancelled, ConfigError, IterationLimitExceeded
from .session import Session
from .state import APPROVAL_SUBJECTS, REASONING_MODES

PASTE_PREVIEW_CHARS = 200
COMPACT_SUMMARY_MESSAGES = 10
COMPACT_SUMMARY_CHARS = 180

# argparse dests that map one-to-one onto config keys
_SESSION_DESTS = (
    "provider",
    "model",
    "api_key",
    "base_url",
    "max_output_tokens",
    "temperature",
    "max_iterations",
    "stream",
    "system_prompt",
    "no_instructions",
    "reasoning",
    "permission_mode",
    "allowed_commands",
    "token_estimator",
    "quiet",
)


def build_parser():
    """Build and return the argument parser.

    Options backed by config keys default to _UNSET so config files can
    fill them in later.
    """
    parser = argparse.ArgumentParser(
        prog="cinder",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="A terminal coding agent that runs a bounded tool-calling loop "
        "against Cerebras or OpenAI-compatible models.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "-p",
        "--prompt",
        default=None,
        help="Run a single prompt non-interactively (same as the positional question).",
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--provider",
        choices=["cerebras", "openai"],
        default=_UNSET,
        help="LLM provider: cerebras (default) or openai (any OpenAI-compatible endpoint).",
    )
    parser.add_argument(
        "--model",
        default=_UNSET,
        help="Model name (see --list-models).",
    )
    parser.add_argument(
        "--api-key",
        default=_UNSET,
        help="API key for the provider (overrides CEREBRAS_API_KEY / OPENAI_API_KEY).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Provider base URL (default: https://api.cerebras.ai/v1 for cerebras).",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens, reserved from the quota on every request.",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: 0.7).",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=_UNSET,
        help="Maximum model calls per question (default: 20).",
    )
    parser.add_argument(
        "--no-stream",
        dest="stream",
        action="store_false",
        default=_UNSET,
        help="Wait for complete responses instead of streaming.",
    )
    parser.add_argument(
        "--system-prompt",
        default=_UNSET,
        help="Additional instructions appended to the system prompt.",
    )
    parser.add_argument(
        "--no-instructions",
        action="store_true",
        default=_UNSET,
        help="Don't load AGENTS.md or CLAUDE.md from the base directory.",
    )
    parser.add_argument(
        "--reasoning",
        choices=list(REASONING_MODES),
        default=_UNSET,
        help="Reasoning preference sent to the model (default: balanced).",
    )
    parser.add_argument(
        "--yolo",
        dest="permission_mode",
        action="store_const",
        const="yolo",
        default=_UNSET,
        help="Auto-approve every tool call and lift the shell command allow-list.",
    )
    parser.add_argument(
        "--allowed-commands",
        default=_UNSET,
        help='Comma-separated shell glob patterns run_bash may execute (e.g. "git status*,pytest*").',
    )
    parser.add_argument(
        "--token-estimator",
        choices=["chars", "tiktoken"],
        default=_UNSET,
        help="Token estimator for quota and context accounting (default: chars).",
    )
    parser.add_argument(
        "--base-dir",
        default=".",
        help="Base directory for file tools (default: current directory).",
    )
    parser.add_argument(
        "--report",
        default=None,
        metavar="FILE",
        help="Write a JSON usage report to FILE when the run ends.",
    )
    parser.add_argument(
        "--list-models",
        action="store_true",
        help="List known models with their context and quota limits, then exit.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (cinder.toml) template.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


def _list_models() -> None:
    for name, model in AVAILABLE_MODELS.items():
        requests = "/".join(str(model.request_limits[h]) for h in ("minute", "hour", "day"))
        tokens = "/".join(str(model.token_limits[h]) for h in ("minute", "hour", "day"))
        print(
            f"{name:<34} {model.provider:<9} context={model.max_context_tokens:<7} "
            f"requests(m/h/d)={requests}  tokens(m/h/d)={tokens}"
        )


def _session_kwargs(args) -> dict:
    config = {dest: getattr(args, dest) for dest in _SESSION_DESTS}
    commands = config["allowed_commands"]
    if isinstance(commands, str):
        config["allowed_commands"] = [c.strip() for c in commands.split(",") if c.strip()]
    if config["model"] is None:
        config["model"] = default_model_for(config["provider"])
    kwargs = config_to_session_kwargs(config)
    kwargs["base_dir"] = args.base_dir
    return kwargs


def _ask_yes_no(prompt_session, question: str, default: bool = False) -> bool:
    suffix = " [Y/n] " if default else " [y/N] "
    try:
        reply = prompt_session.prompt(question + suffix)
    except (EOFError, KeyboardInterrupt):
        return False
    reply = reply.strip().lower()
    if not reply:
        return default
    return reply in ("y", "yes")


def _make_confirm(prompt_session):
    """Approval callback asking the user before sensitive tool calls."""

    def confirm(call) -> bool:
        detail = call.input.get("path") or call.input.get("command") or ""
        return _ask_yes_no(prompt_session, f"Allow {call.name} {detail}?".rstrip())

    return confirm


@contextmanager
def _cancel_on_sigint(session: Session):
    """Map Ctrl-C to a cooperative cancel while a run is in progress."""

    def _handler(signum, frame):
        session.cancel()

    try:
        previous = signal.signal(signal.SIGINT, _handler)
    except ValueError:
        # not the main thread; leave signal handling alone
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _chunk_printer(verbose: bool):
    if not verbose:
        return None
    return fmt.stream_chunk


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("cinder")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.list_models:
        _list_models()
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    question = args.prompt if args.prompt is not None else args.question
    if args.prompt is not None and args.question is not None:
        parser.error("give the question either positionally or with -p, not both")
    if not args.repl and question is None:
        parser.error("question is required (or use --repl)")

    try:
        config = load_config(Path(args.base_dir))
        apply_config_to_args(args, config, env=os.environ)
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)

    args.verbose = not args.quiet
    fmt.init(color=args.color, no_color=args.no_color)

    if not Path(args.base_dir).is_dir():
        fmt.error(f"base directory does not exist: {args.base_dir}")
        sys.exit(1)

    exit_code = 0
    session = None
    try:
        session = _build_session(args)
        if args.repl:
            repl_loop(session, initial=question)
        else:
            exit_code = _run_once(session, question, args.verbose)
    except AgentError as e:
        fmt.error(str(e))
        exit_code = 1
    finally:
        if session is not None and args.report:
            _write_report(session, args.report, args.verbose)

    if exit_code:
        sys.exit(exit_code)


def _build_session(args) -> Session:
    kwargs = _session_kwargs(args)
    confirm = None
    if sys.stdin.isatty() and not args.repl:
        from prompt_toolkit import PromptSession

        confirm = _make_confirm(PromptSession())
    session = Session(**kwargs, confirm=confirm)
    if args.verbose:
        fmt.model_info(f"Using {session.provider}/{session.model}")
    return session


def _write_report(session: Session, path: str, verbose: bool) -> None:
    try:
        session.tracker.write(path, session.model)
    except OSError as e:
        fmt.error(f"Failed to write report to {path}: {e}")
        return
    if verbose:
        fmt.info(f"Report written to {path}")


def _run_once(session: Session, question: str, verbose: bool) -> int:
    on_chunk = _chunk_printer(verbose)
    try:
        with _cancel_on_sigint(session):
            result = session.run(question, on_chunk=on_chunk)
    except IterationLimitExceeded as e:
        fmt.error(str(e))
        return 2
    except Cancelled:
        fmt.warning("interrupted, question aborted.")
        return 130
    finally:
        if on_chunk:
            fmt.stream_end()
    print(result.answer)
    return 0


# ---------------------------------------------------------------------------
# REPL command helpers
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help                          Show this help message\n"
        "  /clear                         Reset conversation to initial state\n"
        "  /compact [note]                Replace history with a short summary\n"
        "  /status                        Show model, modes and context usage\n"
        "  /quota                         Show request and token quota usage\n"
        "  /context                       Show the tracked context items\n"
        "  /approvals [tool auto|ask]     Show or change tool approvals\n"
        "  /reasoning <fast|balanced|thorough>  Change the reasoning preference\n"
        "  /switch-model <name>           Switch model, keeping the conversation\n"
        "  /mention <path|clear>          Add or clear focus files\n"
        "  /exit, /quit                   Exit the REPL"
    )


def build_compact_summary(messages: list[dict]) -> str:
    """Summarise the most recent non-system messages for /compact."""
    recent = [m for m in messages if m["role"] != "system"][-COMPACT_SUMMARY_MESSAGES:]
    lines = []
    for m in recent:
        text = " ".join(m["content"].split())
        if len(text) > COMPACT_SUMMARY_CHARS:
            text = text[:COMPACT_SUMMARY_CHARS] + "..."
        lines.append(f"- {m['role']}: {text}")
    return "Summary preserved:\n" + "\n".join(lines)


def _repl_clear(session: Session) -> None:
    dropped = len(session.loop.get_history()) - 1
    session.reset()
    fmt.info(f"context cleared ({dropped} messages removed)")


def _repl_compact(session: Session, arg: str) -> None:
    loop = session.loop
    before = loop.context.current_usage()
    note = arg.strip() or build_compact_summary(loop.get_history())
    loop.compact_history(note)
    after = loop.context.current_usage()
    fmt.info(f"compacted: ~{before} -> ~{after} tracked tokens")


def _repl_status(session: Session) -> None:
    loop = session.loop
    stats = loop.context.stats()
    state = session.state
    fmt.info(
        f"model: {session.provider}/{session.model}\n"
        f"  reasoning: {state.reasoning}\n"
        f"  permission mode: {state.permission_mode}\n"
        f"  approvals: {state.approvals_summary()}\n"
        f"  focus files: {', '.join(state.mentions()) or '(none)'}\n"
        f"  messages: {len(loop.get_history())}"
    )
    fmt.context_stats("Context", stats["usage"], stats["working_budget"])


def _repl_context(session: Session) -> None:
    context = session.loop.context
    stats = context.stats()
    fmt.context_stats(
        f"Context ({stats['items']} items, {stats['compressions']} compressed, "
        f"{stats['evictions']} evicted)",
        stats["usage"],
        stats["working_budget"],
    )
    fmt.context_view(context.build_structured_view())


def _repl_approvals(session: Session, arg: str) -> None:
    parts = arg.split()
    if not parts:
        fmt.info(f"approvals: {session.state.approvals_summary()}")
        return
    if len(parts) != 2 or parts[0] not in APPROVAL_SUBJECTS or parts[1] not in ("auto", "ask"):
        fmt.warning(f"usage: /approvals <{'|'.join(APPROVAL_SUBJECTS)}> <auto|ask>")
        return
    session.state.set_approval(parts[0], parts[1] == "auto")
    session.refresh_system_prompt()
    fmt.info(f"approvals: {session.state.approvals_summary()}")


def _repl_reasoning(session: Session, arg: str) -> None:
    mode = arg.strip()
    if not mode:
        fmt.info(f"reasoning: {session.state.reasoning} ({session.state.reasoning_description()})")
        return
    try:
        session.state.set_reasoning(mode)
    except ValueError as e:
        fmt.warning(str(e))
        return
    session.refresh_system_prompt()
    fmt.info(f"reasoning set to {mode}")


def _repl_switch_model(session: Session, arg: str) -> None:
    name = arg.strip()
    if not name:
        fmt.warning("/switch-model requires a model name")
        return
    try:
        session.switch_model(name)
    except ConfigError as e:
        fmt.warning(str(e))
        return
    fmt.info(f"switched to {session.provider}/{name}")


def _repl_mention(session: Session, arg: str) -> None:
    target = arg.strip()
    if not target:
        fmt.info(f"focus files: {', '.join(session.state.mentions()) or '(none)'}")
        return
    if target == "clear":
        session.state.clear_mentions()
        fmt.info("focus files cleared")
    else:
        if not (Path(session.base_dir) / target).exists():
            fmt.warning(f"{target} does not exist (added anyway)")
        session.state.add_mention(target)
        fmt.info(f"focus files: {', '.join(session.state.mentions())}")
    session.refresh_system_prompt()


def _confirm_paste(prompt_session, line: str) -> bool:
    preview = line[:PASTE_PREVIEW_CHARS].replace("\n", " ")
    fmt.info(f"Large paste detected ({len(line)} chars): {preview}...")
    return _ask_yes_no(prompt_session, "Send it?", default=True)


def _ask(session: Session, line: str) -> None:
    on_chunk = _chunk_printer(session.verbose)
    try:
        with _cancel_on_sigint(session):
            result = session.ask(line, on_chunk=on_chunk)
    except Cancelled:
        fmt.warning("interrupted, question aborted.")
        return
    except IterationLimitExceeded as e:
        fmt.warning(str(e))
        return
    except AgentError as e:
        fmt.error(str(e))
        return
    finally:
        if on_chunk:
            fmt.stream_end()
    print(result.answer)


def repl_loop(session: Session, initial: str | None = None) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(session.base_dir, ".cinder", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansired", "cinder> ")])

    session.confirm = _make_confirm(prompt_session)
    session.loop.approval.confirm = session.confirm

    if session.verbose:
        fmt.repl_banner(f"{session.provider}/{session.model}")

    if initial:
        _ask(session, initial)

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = prompt_session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue

        if line in ("/exit", "/quit"):
            break

        cmd_parts = line.split(None, 1)
        cmd = cmd_parts[0].lower()
        cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""

        if cmd == "/help":
            _repl_help()
            continue
        elif cmd == "/clear":
            _repl_clear(session)
            continue
        elif cmd == "/compact":
            _repl_compact(session, cmd_arg)
            continue
        elif cmd == "/status":
            _repl_status(session)
            continue
        elif cmd == "/quota":
            fmt.quota_stats(session.quota_usage())
            continue
        elif cmd == "/context":
            _repl_context(session)
            continue
        elif cmd == "/approvals":
            _repl_approvals(session, cmd_arg)
            continue
        elif cmd == "/reasoning":
            _repl_reasoning(session, cmd_arg)
            continue
        elif cmd == "/switch-model":
            _repl_switch_model(session, cmd_arg)
            continue
        elif cmd == "/mention":
            _repl_mention(session, cmd_arg)
            continue

        if len(line) >= LARGE_PASTE_THRESHOLD and not _confirm_paste(prompt_session, line):
            fmt.info("paste discarded")
            continue

        _ask(session, line)

    if session.verbose:
        fmt.info(session.tracker.build_summary(session.model))


if __name__ == "__main__":
    main()
