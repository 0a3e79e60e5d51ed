"""Public library API for cinder: Session class and Result dataclass."""

import copy
from dataclasses import dataclass

from .agent import DEFAULT_MAX_ITERATIONS, AgentLoop
from .client import DEFAULT_TEMPERATURE, build_client
from .context import ContextWindowManager, make_estimator
from .models import clamp_output_tokens, default_model_for, get_model
from .prompt import build_system_prompt, load_instructions
from .quota import QuotaTracker
from .report import ConfigError, SessionTracker
from .state import ApprovalPolicy, SessionState
from .tools import DEFAULT_BASH_PATTERNS, ToolRegistry


@dataclass
class Result:
    """Result of a session run or ask call."""

    answer: str
    iterations: int
    messages: list[dict]
    report: dict | None


class Session:
    """Programmatic interface to the cinder agent loop.

    Stores configuration as plain attributes. Call .run() for single-shot
    questions or .ask() for multi-turn conversations. Credentials are taken
    only from the arguments; the CLI resolves environment variables.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        provider: str = "cerebras",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_output_tokens: int | None = None,
        temperature: float | None = DEFAULT_TEMPERATURE,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        stream: bool = False,
        system_prompt: str | None = None,
        instructions: bool = True,
        reasoning: str = "balanced",
        permission_mode: str = "interactive",
        allowed_commands: list[str] | None = None,
        token_estimator: str = "chars",
        verbose: bool = False,
        confirm=None,
        client_factory=None,
    ):
        self.base_dir = base_dir
        self.provider = provider
        self.model = model or default_model_for(provider)
        self.api_key = api_key
        self.base_url = base_url
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.max_iterations = max_iterations
        self.stream = stream
        self.system_prompt = system_prompt
        self.instructions = instructions
        self.allowed_commands = allowed_commands
        self.token_estimator = token_estimator
        self.verbose = verbose
        self.confirm = confirm
        self.client_factory = client_factory

        self.model_config = get_model(self.model)
        self.state = SessionState(self.model, custom_instructions=system_prompt)
        try:
            self.state.set_reasoning(reasoning)
            self.state.set_permission_mode(permission_mode)
            self.estimator = make_estimator(token_estimator)
        except ValueError as e:
            raise ConfigError(str(e)) from None

        self.tracker = SessionTracker()
        self._loop: AgentLoop | None = None
        self._instructions_text = ""
        self.instructions_loaded: list[str] = []

    # -- setup -----------------------------------------------------------------

    def _make_client(self, model: str):
        if self.client_factory is not None:
            return self.client_factory(self.provider, model)
        config = get_model(model)
        return build_client(
            self.provider,
            model,
            api_key=self.api_key,
            base_url=self.base_url,
            max_output_tokens=clamp_output_tokens(config, self.max_output_tokens),
            temperature=self.temperature,
            verbose=self.verbose,
        )

    def _setup(self) -> AgentLoop:
        """Build client, tools, quota tracker, context manager and loop once."""
        if self._loop is not None:
            return self._loop

        if self.instructions:
            self._instructions_text, self.instructions_loaded = load_instructions(
                self.base_dir, self.verbose
            )

        self.registry = ToolRegistry(
            self.base_dir,
            allowed_commands=self.allowed_commands or DEFAULT_BASH_PATTERNS,
            unrestricted=self.state.yolo,
            tracker=self.tracker,
        )
        self.quota = QuotaTracker(self.model_config)
        self.context = ContextWindowManager(
            self.model_config.max_context_tokens, estimator=self.estimator
        )
        self._loop = AgentLoop(
            self._make_client(self.model),
            self.registry,
            self.quota,
            self.context,
            self.build_prompt(),
            max_iterations=self.max_iterations,
            stream=self.stream,
            estimator=self.estimator,
            approval=ApprovalPolicy(self.state, self.confirm),
            tracker=self.tracker,
            verbose=self.verbose,
        )
        return self._loop

    @property
    def loop(self) -> AgentLoop:
        return self._setup()

    def build_prompt(self) -> str:
        return build_system_prompt(self.registry, self.state, self._instructions_text)

    def refresh_system_prompt(self) -> None:
        """Rebuild the system prompt after a state change, keeping history."""
        self.loop.update_system_prompt(self.build_prompt())

    # -- conversation ----------------------------------------------------------

    def _result(self, loop: AgentLoop, answer: str, report: bool) -> Result:
        return Result(
            answer=answer,
            iterations=loop.iterations,
            messages=copy.deepcopy(loop.get_history()),
            report=self.tracker.to_dict(self.model) if report else None,
        )

    def run(self, question: str, *, report: bool = False, on_chunk=None) -> Result:
        """Single-shot: answer a question in a fresh conversation."""
        loop = self._setup()
        loop.reset(self.build_prompt())
        answer = loop.run(question, on_chunk=on_chunk)
        return self._result(loop, answer, report)

    def ask(self, question: str, *, on_chunk=None) -> Result:
        """Conversational: share context across questions (like the REPL)."""
        loop = self._setup()
        answer = loop.run(question, on_chunk=on_chunk)
        return self._result(loop, answer, False)

    def reset(self) -> None:
        """Clear conversation state without invalidating setup."""
        if self._loop is not None:
            self._loop.reset(self.build_prompt())

    def cancel(self) -> None:
        if self._loop is not None:
            self._loop.cancel()

    def switch_model(self, model: str) -> None:
        """Point the conversation at another model, keeping history."""
        config = get_model(model)
        loop = self._setup()
        client = self._make_client(model)
        loop.update_client(client, quota=QuotaTracker(config))
        self.quota = loop.quota
        self.context.max_context_tokens = config.max_context_tokens
        self.model = model
        self.model_config = config
        self.state.model = model

    def quota_usage(self) -> dict:
        return self._setup().quota.usage()

