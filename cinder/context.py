"""Bounded, prioritised collection of conversation fragments.

The manager mirrors what the agent has put in play (configuration, files,
pastes, tool output, history) and keeps its token estimate under a working
budget derived from the model's context length. Configuration is never
dropped; other items are compressed and then evicted under pressure.
"""

import itertools
import math
from dataclasses import dataclass

import tiktoken

ITEM_TYPES = ("config", "file", "user_paste", "history", "tool_output")

DEFAULT_PRIORITIES = {
    "config": 100,
    "file": 50,
    "user_paste": 40,
    "history": 30,
    "tool_output": 10,
}

# Rendering order for the structured view, with group titles.
VIEW_GROUPS = (
    ("config", "Configuration"),
    ("user_paste", "Pasted content"),
    ("file", "Files"),
    ("tool_output", "Tool outputs"),
    ("history", "Conversation history"),
)

HISTORY_RESERVE = 0.30
OUTPUT_RESERVE = 0.10
SOFT_LIMIT = 0.90

PROTECTED_HISTORY = 10
PROTECTED_FILES = 5

COMPRESS_HEAD = 200
COMPRESS_TAIL = 200


def estimate_chars(text: str) -> int:
    """Rough token estimate: one token per four characters, rounded up."""
    return math.ceil(len(text) / 4)


class TiktokenEstimator:
    """Token estimator backed by tiktoken's cl100k_base encoding."""

    def __init__(self, encoding: str = "cl100k_base"):
        self._encoder = tiktoken.get_encoding(encoding)

    def __call__(self, text: str) -> int:
        return len(self._encoder.encode(text, disallowed_special=()))


def make_estimator(name: str):
    if name == "tiktoken":
        return TiktokenEstimator()
    if name == "chars":
        return estimate_chars
    raise ValueError(f"unknown token estimator {name!r} (expected chars or tiktoken)")


@dataclass
class ContextItem:
    type: str
    priority: int
    estimated_tokens: int
    last_accessed: int
    content: str
    source: str | None
    sequence_index: int
    compressed: bool = False


def _escape_attr(value: str) -> str:
    return (
        value.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&#39;")
    )


def _escape_text(value: str) -> str:
    return value.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def compress_text(text: str, head: int = COMPRESS_HEAD, tail: int = COMPRESS_TAIL) -> str:
    """Keep head and tail of text around a marker naming the dropped length."""
    if len(text) <= head + tail:
        return text
    dropped = len(text) - head - tail
    return (
        f"{text[:head]}\n[... {dropped} characters compressed ...]\n{text[-tail:]}"
    )


class ContextWindowManager:
    """Tracks estimated token usage and enforces the working budget."""

    def __init__(self, max_context_tokens: int, estimator=estimate_chars):
        if max_context_tokens <= 0:
            raise ValueError("max_context_tokens must be positive")
        self.max_context_tokens = max_context_tokens
        self.estimator = estimator
        self._items: list[ContextItem] = []
        self._clock = itertools.count(1)
        self._next_seq = 1
        self.evictions = 0
        self.compressions = 0

    # -- budget ------------------------------------------------------------

    @property
    def working_budget(self) -> int:
        reserve = HISTORY_RESERVE + OUTPUT_RESERVE
        return int(self.max_context_tokens * (1 - reserve))

    @property
    def soft_limit(self) -> int:
        return int(self.working_budget * SOFT_LIMIT)

    def current_usage(self) -> int:
        return sum(item.estimated_tokens for item in self._items)

    # -- mutation ----------------------------------------------------------

    def add(
        self,
        content: str,
        type: str,
        source: str | None = None,
        priority: int | None = None,
    ) -> ContextItem:
        if type not in DEFAULT_PRIORITIES:
            raise ValueError(
                f"unknown context item type {type!r}; expected one of {', '.join(ITEM_TYPES)}"
            )
        item = ContextItem(
            type=type,
            priority=DEFAULT_PRIORITIES[type] if priority is None else priority,
            estimated_tokens=self.estimator(content),
            last_accessed=next(self._clock),
            content=content,
            source=source,
            sequence_index=self._next_seq,
        )
        self._next_seq += 1
        self._items.append(item)
        if self.current_usage() > self.soft_limit:
            self._relieve_pressure(item)
        return item

    def replace_config(self, source: str, content: str) -> ContextItem:
        """Swap the config item with this source for new content."""
        self._items = [
            i for i in self._items if not (i.type == "config" and i.source == source)
        ]
        self._renumber()
        return self.add(content, "config", source=source)

    def retain_only(self, types) -> None:
        keep = set(types)
        self._items = [i for i in self._items if i.type in keep]
        self._renumber()

    def clear(self) -> None:
        self._items = []
        self._next_seq = 1

    # -- access ------------------------------------------------------------

    def items(self) -> list[ContextItem]:
        return list(self._items)

    def get(self, index: int) -> ContextItem:
        """Return the item with this sequence index and mark it as accessed."""
        for item in self._items:
            if item.sequence_index == index:
                item.last_accessed = next(self._clock)
                return item
        raise KeyError(index)

    def stats(self) -> dict:
        by_type = {t: 0 for t in ITEM_TYPES}
        tokens_by_type = {t: 0 for t in ITEM_TYPES}
        for item in self._items:
            by_type[item.type] += 1
            tokens_by_type[item.type] += item.estimated_tokens
        return {
            "items": len(self._items),
            "usage": self.current_usage(),
            "working_budget": self.working_budget,
            "soft_limit": self.soft_limit,
            "max_context_tokens": self.max_context_tokens,
            "by_type": by_type,
            "tokens_by_type": tokens_by_type,
            "compressions": self.compressions,
            "evictions": self.evictions,
        }

    def build_structured_view(self) -> str:
        sections = []
        for item_type, title in VIEW_GROUPS:
            group = [i for i in self._items if i.type == item_type]
            if not group:
                continue
            lines = [f"## {title}"]
            for item in group:
                attrs = f'index="{item.sequence_index}"'
                if item.source:
                    attrs += f' source="{_escape_attr(item.source)}"'
                attrs += f' type="{item.type}"'
                lines.append(f"<item {attrs}>")
                lines.append(_escape_text(item.content))
                lines.append("</item>")
            sections.append("\n".join(lines))
        return "\n\n".join(sections)

    # -- pressure ----------------------------------------------------------

    def _protected(self) -> set[int]:
        """Identity set of items that are never compressed or evicted."""
        protected = {id(i) for i in self._items if i.type == "config"}
        for item_type, keep in (("history", PROTECTED_HISTORY), ("file", PROTECTED_FILES)):
            recent = sorted(
                (i for i in self._items if i.type == item_type),
                key=lambda i: i.last_accessed,
                reverse=True,
            )
            protected.update(id(i) for i in recent[:keep])
        return protected

    def _relieve_pressure(self, incoming: ContextItem) -> None:
        protected = self._protected()

        for item in self._items:
            if self.current_usage() <= self.soft_limit:
                return
            if item.type != "tool_output" or item.compressed or id(item) in protected:
                continue
            shorter = compress_text(item.content)
            item.compressed = True
            if shorter is item.content:
                continue
            item.content = shorter
            item.estimated_tokens = self.estimator(shorter)
            self.compressions += 1

        if self.current_usage() <= self.soft_limit:
            return

        # The item being added is never the eviction victim of its own add.
        candidates = sorted(
            (
                i
                for i in self._items
                if id(i) not in protected and i is not incoming
            ),
            key=lambda i: (i.priority, i.last_accessed, i.sequence_index),
        )
        evicted = set()
        for victim in candidates:
            if self.current_usage() <= self.soft_limit:
                break
            self._items.remove(victim)
            evicted.add(id(victim))
            self.evictions += 1
        if evicted:
            self._renumber()

    def _renumber(self) -> None:
        for seq, item in enumerate(self._items, start=1):
            item.sequence_index = seq
        self._next_seq = len(self._items) + 1
