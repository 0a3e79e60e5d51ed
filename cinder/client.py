"""Model client: one litellm-backed implementation for every provider."""

from collections.abc import Iterator
from typing import Protocol

from . import fmt
from .models import PROVIDERS
from .report import ConfigError, ProviderError

CEREBRAS_BASE_URL = "https://api.cerebras.ai/v1"
DEFAULT_TEMPERATURE = 0.7


class ModelClient(Protocol):
    """What the agent loop needs from a provider."""

    model: str

    def send(self, messages: list, stream: bool) -> str | Iterator[str]: ...


class LiteLLMClient:
    """Send chat messages through litellm.completion.

    `last_usage` holds the provider-reported total token count of the most
    recent call, or None when the provider did not report one.
    """

    def __init__(
        self,
        provider: str,
        model: str,
        api_key: str | None = None,
        base_url: str | None = None,
        max_output_tokens: int | None = None,
        temperature: float | None = DEFAULT_TEMPERATURE,
        verbose: bool = False,
    ):
        if provider not in PROVIDERS:
            raise ConfigError(
                f"unknown provider {provider!r}; expected one of {', '.join(PROVIDERS)}"
            )
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.verbose = verbose
        self.last_usage: int | None = None

    @property
    def model_string(self) -> str:
        return f"{self.provider}/{self.model}"

    def _completion_kwargs(self, messages: list, stream: bool) -> dict:
        kwargs = dict(model=self.model_string, messages=messages, stream=stream)
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.base_url:
            kwargs["api_base"] = self.base_url
        if self.max_output_tokens is not None:
            kwargs["max_tokens"] = self.max_output_tokens
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        if stream:
            kwargs["stream_options"] = {"include_usage": True}
        return kwargs

    def send(self, messages: list, stream: bool) -> str | Iterator[str]:
        """Return the full reply, or an iterator of text chunks when streaming.

        Any provider or transport failure surfaces as ProviderError carrying
        the underlying message.
        """
        import litellm

        litellm.suppress_debug_info = True
        self.last_usage = None

        kwargs = self._completion_kwargs(messages, stream)
        if self.verbose:
            extra = f", max_tokens={self.max_output_tokens}" if self.max_output_tokens else ""
            fmt.model_info(f"Calling model {self.model_string}{extra}")

        try:
            response = litellm.completion(**kwargs)
        except Exception as e:
            raise ProviderError(f"LLM call failed: {e}") from e

        if stream:
            return self._iter_chunks(response)

        self.last_usage = _total_tokens(getattr(response, "usage", None))
        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError) as e:
            raise ProviderError(f"LLM call failed: malformed response: {e}") from e
        return content or ""

    def _iter_chunks(self, response) -> Iterator[str]:
        try:
            for chunk in response:
                usage = _total_tokens(getattr(chunk, "usage", None))
                if usage is not None:
                    self.last_usage = usage
                if not chunk.choices:
                    continue
                text = chunk.choices[0].delta.content
                if text:
                    yield text
        except GeneratorExit:
            raise
        except Exception as e:
            raise ProviderError(f"LLM stream failed: {e}") from e


def _total_tokens(usage) -> int | None:
    if usage is None:
        return None
    total = getattr(usage, "total_tokens", None)
    if isinstance(total, int) and total > 0:
        return total
    return None


def build_client(
    provider: str,
    model: str,
    *,
    api_key: str | None,
    base_url: str | None = None,
    max_output_tokens: int | None = None,
    temperature: float | None = DEFAULT_TEMPERATURE,
    verbose: bool = False,
) -> LiteLLMClient:
    """Validate credentials and construct a client."""
    if not api_key:
        env_var = "CEREBRAS_API_KEY" if provider == "cerebras" else "OPENAI_API_KEY"
        raise ConfigError(
            f"--provider {provider} requires an API key (--api-key or {env_var})"
        )
    if provider == "cerebras" and not base_url:
        base_url = CEREBRAS_BASE_URL
    return LiteLLMClient(
        provider,
        model,
        api_key=api_key,
        base_url=base_url,
        max_output_tokens=max_output_tokens,
        temperature=temperature,
        verbose=verbose,
    )
