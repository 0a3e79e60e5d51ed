"""Model catalog: context lengths and provider quota tables."""

from dataclasses import dataclass
from types import MappingProxyType

from .report import ConfigError

HORIZONS = ("minute", "hour", "day")

PROVIDERS = ("cerebras", "openai")

DEFAULT_PROVIDER = "cerebras"
DEFAULT_MODEL = "qwen-3-235b-a22b-instruct-2507"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"


@dataclass(frozen=True)
class ModelQuotaConfig:
    name: str
    max_context_tokens: int
    request_limits: MappingProxyType
    token_limits: MappingProxyType
    provider: str = "cerebras"

    def __post_init__(self):
        for label, limits in (
            ("request_limits", self.request_limits),
            ("token_limits", self.token_limits),
        ):
            missing = [h for h in HORIZONS if h not in limits]
            if missing:
                raise ValueError(f"{self.name}: {label} missing {', '.join(missing)}")


def _model(name, context, requests, tokens, provider="cerebras"):
    return ModelQuotaConfig(
        name=name,
        max_context_tokens=context,
        request_limits=MappingProxyType(dict(zip(HORIZONS, requests))),
        token_limits=MappingProxyType(dict(zip(HORIZONS, tokens))),
        provider=provider,
    )


_CATALOG = [
    _model("gpt-oss-120b", 65536, (30, 900, 14400), (64000, 1_000_000, 1_000_000)),
    _model("llama-3.3-70b", 65536, (30, 900, 14400), (64000, 1_000_000, 1_000_000)),
    _model("llama3.1-8b", 8192, (30, 900, 14400), (60000, 1_000_000, 1_000_000)),
    _model(
        "qwen-3-235b-a22b-instruct-2507",
        65536,
        (30, 900, 1440),
        (64000, 1_000_000, 1_000_000),
    ),
    _model("qwen-3-32b", 65536, (30, 900, 14400), (64000, 1_000_000, 1_000_000)),
    _model("zai-glm-4.6", 64000, (10, 100, 100), (60000, 100_000, 1_000_000)),
    # OpenAI-compatible endpoints publish per-account limits; these are the
    # tier-1 defaults and only guard against runaway loops.
    _model(
        "gpt-4o-mini",
        128000,
        (500, 30000, 10000),
        (200_000, 12_000_000, 2_000_000),
        provider="openai",
    ),
    _model(
        "gpt-4o",
        128000,
        (500, 30000, 10000),
        (30_000, 1_800_000, 900_000),
        provider="openai",
    ),
]

AVAILABLE_MODELS = MappingProxyType({m.name: m for m in _CATALOG})


def model_names(provider: str | None = None) -> list[str]:
    return [
        m.name for m in _CATALOG if provider is None or m.provider == provider
    ]


def get_model(name: str) -> ModelQuotaConfig:
    """Look up a model by name, raising ConfigError with the catalog on a miss."""
    try:
        return AVAILABLE_MODELS[name]
    except KeyError:
        raise ConfigError(
            f"unknown model {name!r}; available models: {', '.join(model_names())}"
        ) from None


def default_model_for(provider: str) -> str:
    if provider == "openai":
        return DEFAULT_OPENAI_MODEL
    return DEFAULT_MODEL


def clamp_output_tokens(model: ModelQuotaConfig, requested: int | None) -> int | None:
    """Cap the output reservation at the model's context length."""
    if requested is None:
        return None
    return min(requested, model.max_context_tokens)
