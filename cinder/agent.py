"""The agent loop: request, parse, dispatch tools, repeat until a final answer."""

import json
import threading
import time

from . import fmt
from .context import ContextWindowManager, estimate_chars
from .parser import FinalAnswer, ToolBatch, ToolCall, parse
from .quota import QuotaTracker
from .report import (
    AgentError,
    Cancelled,
    IterationLimitExceeded,
    ProviderError,
    QuotaExceeded,
    SessionTracker,
    ToolError,
)
from .tools import SENSITIVE_TOOLS

DEFAULT_MAX_ITERATIONS = 20
LARGE_PASTE_THRESHOLD = 500
MAX_ARG_LOG = 1000
MAX_RESULT_PREVIEW = 500

DEFAULT_COMPACT_NOTE = (
    "Conversation compacted manually; request a recap from the user if "
    "additional context is needed."
)

SYSTEM_PROMPT_SOURCE = "system_prompt"


class CancelToken:
    """Cooperative cancellation flag shared between the loop and its caller."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def clear(self) -> None:
        self._event.clear()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        if self._event.is_set():
            raise Cancelled()


def format_tool_result(call: ToolCall, result: str) -> str:
    return "\n".join([f"TOOL_RESULT {call.id}", f"name: {call.name}", "output:", result])


def format_tool_error(call: ToolCall, message: str) -> str:
    return f"TOOL_RESULT {call.id}\nname: {call.name}\nerror: {message}"


class AgentLoop:
    """Drives one conversation against a model client.

    The loop owns the message history and the context manager. It consults
    the quota tracker before every request and records usage after every
    attempt, successful or not.
    """

    def __init__(
        self,
        client,
        tools,
        quota: QuotaTracker,
        context: ContextWindowManager,
        system_prompt: str,
        *,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        stream: bool = False,
        estimator=estimate_chars,
        output_reservation: int | None = None,
        approval=None,
        cancel_token: CancelToken | None = None,
        tracker: SessionTracker | None = None,
        verbose: bool = False,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.client = client
        self.tools = tools
        self.quota = quota
        self.context = context
        self.max_iterations = max_iterations
        self.stream = stream
        self.estimator = estimator
        self._output_reservation = output_reservation
        self.approval = approval
        self._cancel = cancel_token or CancelToken()
        self.tracker = tracker
        self.verbose = verbose
        self.iterations = 0
        self._system_prompt = system_prompt
        self._messages: list[dict] = []
        self.reset(system_prompt)

    # -- conversation management ---------------------------------------------

    def reset(self, system_prompt: str | None = None) -> None:
        """Start a fresh conversation, optionally with a new system prompt."""
        if system_prompt is not None:
            self._system_prompt = system_prompt
        self._messages = [{"role": "system", "content": self._system_prompt}]
        self.context.clear()
        self.context.add(self._system_prompt, "config", source=SYSTEM_PROMPT_SOURCE)

    def update_system_prompt(self, prompt: str) -> None:
        """Replace the system message in place, keeping the conversation."""
        self._system_prompt = prompt
        if self._messages and self._messages[0]["role"] == "system":
            self._messages[0] = {"role": "system", "content": prompt}
        else:
            self._messages.insert(0, {"role": "system", "content": prompt})
        self.context.replace_config(SYSTEM_PROMPT_SOURCE, prompt)

    def update_client(self, client, quota: QuotaTracker | None = None) -> None:
        """Swap the model client (and its quota tracker) without losing history."""
        self.client = client
        if quota is not None:
            self.quota = quota

    def compact_history(self, note: str | None = None) -> None:
        system = self._messages[0]["content"] if self._messages else self._system_prompt
        self._messages = [
            {"role": "system", "content": system},
            {"role": "assistant", "content": note or DEFAULT_COMPACT_NOTE},
        ]
        self.context.retain_only({"config"})

    def get_history(self) -> list[dict]:
        return [dict(m) for m in self._messages]

    def get_context_manager(self) -> ContextWindowManager:
        return self.context

    @property
    def cancel_token(self) -> CancelToken:
        return self._cancel

    def cancel(self) -> None:
        self._cancel.cancel()

    @property
    def output_reservation(self) -> int:
        if self._output_reservation is not None:
            return self._output_reservation
        return getattr(self.client, "max_output_tokens", None) or 0

    # -- running ---------------------------------------------------------------

    def run(
        self,
        user_prompt: str,
        *,
        max_iterations: int | None = None,
        stream: bool | None = None,
        system_prompt: str | None = None,
        on_chunk=None,
    ) -> str:
        """Run the loop for one user prompt and return the final answer.

        Raises QuotaExceeded, ProviderError, Cancelled or
        IterationLimitExceeded; tool failures are fed back to the model.
        """
        limit = self.max_iterations if max_iterations is None else max_iterations
        if limit < 1:
            raise ValueError("max_iterations must be at least 1")
        if system_prompt is not None:
            self.reset(system_prompt)
        use_stream = self.stream if stream is None else stream

        self._messages.append({"role": "user", "content": user_prompt})
        item_type = "user_paste" if len(user_prompt) >= LARGE_PASTE_THRESHOLD else "history"
        self.context.add(user_prompt, item_type, source="user")

        self.iterations = 0
        try:
            while self.iterations < limit:
                self.iterations += 1
                self._cancel.check()
                if self.verbose:
                    fmt.turn_header(self.iterations, limit, self._estimate_prompt())

                response = self._request(use_stream, on_chunk)
                outcome = parse(response)

                if isinstance(outcome, ToolBatch):
                    if self.verbose:
                        fmt.assistant_text(f"requested {len(outcome.calls)} tool call(s)")
                    self._messages.append({"role": "assistant", "content": response})
                    self.context.add(response, "history", source="assistant")
                    self._dispatch(outcome.calls)
                    if self.verbose:
                        fmt.context_stats(
                            f"Context after iteration {self.iterations}",
                            self.context.current_usage(),
                            self.context.working_budget,
                        )
                    continue

                text = outcome.message if isinstance(outcome, FinalAnswer) else response
                self._messages.append({"role": "assistant", "content": text})
                self.context.add(text, "history", source="assistant")
                if self.verbose:
                    fmt.completion(self.iterations, "ok")
                return text.strip()

            if self.verbose:
                fmt.completion(self.iterations, "max_iterations")
            raise IterationLimitExceeded(limit)
        except Cancelled:
            self._cancel.clear()
            raise

    def _estimate_prompt(self) -> int:
        return sum(self.estimator(m["content"]) for m in self._messages)

    def _request(self, stream: bool, on_chunk) -> str:
        estimated = self._estimate_prompt() + self.output_reservation
        check = self.quota.can_make_request(estimated)
        if not check.allowed:
            raise QuotaExceeded(check.reason)

        client = self.client
        chunks: list[str] = []
        t0 = time.monotonic()
        try:
            if stream:
                reply = client.send(list(self._messages), True)
                if isinstance(reply, str):
                    reply = iter([reply])
                self._consume(reply, chunks, on_chunk)
            elif self.verbose:
                with fmt.llm_spinner():
                    chunks.append(client.send(list(self._messages), False))
            else:
                chunks.append(client.send(list(self._messages), False))
        except AgentError:
            raise
        except Exception as e:
            raise ProviderError(f"LLM call failed: {e}") from e
        finally:
            elapsed = time.monotonic() - t0
            partial = "".join(chunks)
            usage = getattr(client, "last_usage", None)
            tokens = usage if usage else estimated + self.estimator(partial)
            self.quota.record_request(tokens)
            if self.tracker is not None:
                self.tracker.record_api_call(elapsed, tokens)

        response = "".join(chunks)
        if self.verbose:
            outcome = "stream" if stream else "final"
            fmt.llm_timing(elapsed, outcome)
        return response

    def _consume(self, reply, chunks: list[str], on_chunk) -> None:
        iterator = iter(reply)
        try:
            while True:
                self._cancel.check()
                try:
                    chunk = next(iterator)
                except StopIteration:
                    break
                chunks.append(chunk)
                if on_chunk is not None:
                    on_chunk(chunk)
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()

    def _dispatch(self, calls) -> None:
        for call in calls:
            self._cancel.check()
            if self.verbose:
                pretty = json.dumps(call.input, indent=2)
                if len(pretty) > MAX_ARG_LOG:
                    pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
                fmt.tool_call(call.name, pretty)

            t0 = time.monotonic()
            try:
                if (
                    self.approval is not None
                    and call.name in SENSITIVE_TOOLS
                    and not self.approval(call)
                ):
                    if self.verbose:
                        fmt.tool_declined(call.name)
                    raise ToolError(f"user declined {call.name}")
                result = self.tools.execute(call)
            except Cancelled:
                raise
            except Exception as e:
                message = str(e) or type(e).__name__
                if self.verbose:
                    fmt.tool_error(call.name, message)
                content = format_tool_error(call, message)
                self._messages.append({"role": "user", "content": content})
                self.context.add(content, "tool_output", source=call.name)
                continue

            if self.verbose:
                fmt.tool_result(call.name, time.monotonic() - t0, result[:MAX_RESULT_PREVIEW])
            content = format_tool_result(call, result)
            self._messages.append({"role": "user", "content": content})
            if call.name == "read_file":
                self.context.add(content, "file", source=str(call.input.get("path", "")))
            else:
                self.context.add(content, "tool_output", source=call.name)
