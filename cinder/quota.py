"""Sliding-window request and token accounting per model.

Each horizon (minute, hour, day) keeps two parallel lists: request timestamps
and the token count recorded with each. Both lists are purged together before
every read or write, so they always have the same length.
"""

import time
from dataclasses import dataclass, field

from .models import HORIZONS, ModelQuotaConfig

WINDOW_SECONDS = {"minute": 60, "hour": 3600, "day": 86400}


@dataclass
class QuotaWindow:
    requests: list[float] = field(default_factory=list)
    tokens: list[int] = field(default_factory=list)

    def purge(self, cutoff: float) -> None:
        kept = [(ts, n) for ts, n in zip(self.requests, self.tokens) if ts > cutoff]
        self.requests = [ts for ts, _ in kept]
        self.tokens = [n for _, n in kept]

    def token_total(self) -> int:
        return sum(self.tokens)


@dataclass(frozen=True)
class QuotaCheck:
    allowed: bool
    reason: str | None = None

    def __bool__(self):
        return self.allowed


class QuotaTracker:
    """Admission control for one model's request and token quotas."""

    def __init__(self, model: ModelQuotaConfig, clock=time.time):
        self.model = model
        self._clock = clock
        self.windows = {h: QuotaWindow() for h in HORIZONS}

    def _purge(self) -> None:
        now = self._clock()
        for horizon, window in self.windows.items():
            window.purge(now - WINDOW_SECONDS[horizon])

    def can_make_request(self, estimated_tokens: int = 0) -> QuotaCheck:
        """Decide whether a request of this size may be sent now.

        Only purges expired entries; never records anything.
        """
        self._purge()

        limit = self.model.max_context_tokens
        if estimated_tokens > limit:
            return QuotaCheck(
                False,
                f"Request exceeds model max context length ({limit}). "
                f"Estimated: {estimated_tokens} tokens.",
            )

        for horizon in HORIZONS:
            count = len(self.windows[horizon].requests)
            cap = self.model.request_limits[horizon]
            if count >= cap:
                return QuotaCheck(
                    False,
                    f"Request quota exceeded for {horizon} ({count}/{cap} requests). "
                    "Please wait before making another request.",
                )

        for horizon in HORIZONS:
            used = self.windows[horizon].token_total()
            cap = self.model.token_limits[horizon]
            if used + estimated_tokens > cap:
                return QuotaCheck(
                    False,
                    f"Token quota exceeded for {horizon} ({used}/{cap} tokens used). "
                    f"Estimated request: {estimated_tokens} tokens. "
                    "Please wait or reduce request size.",
                )

        return QuotaCheck(True)

    def record_request(self, tokens_used: int = 0) -> None:
        self._purge()
        now = self._clock()
        for window in self.windows.values():
            window.requests.append(now)
            window.tokens.append(tokens_used)

    def usage(self) -> dict:
        self._purge()
        return {
            "requests": {h: len(w.requests) for h, w in self.windows.items()},
            "tokens": {h: w.token_total() for h, w in self.windows.items()},
            "limits": {
                "requests": dict(self.model.request_limits),
                "tokens": dict(self.model.token_limits),
            },
        }

    def reset(self) -> None:
        self.windows = {h: QuotaWindow() for h in HORIZONS}
