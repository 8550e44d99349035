"""Conversation context with character-based token counting and compaction."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Any, Optional

_LEGACY_THRESHOLD = 10000
_DEFAULT_MAX_REPLY_TOKENS = 4096
_DEFAULT_MAX_CONTEXT_TOKENS = 32000


@dataclass(frozen=True)
class ModelConfig:
    """Context-window sizing of a model."""

    max_context_tokens: int
    max_reply_tokens: int
    compaction_buffer: int

    @property
    def compaction_threshold(self) -> int:
        return self.max_context_tokens - self.max_reply_tokens - self.compaction_buffer


@dataclass(frozen=True)
class Message:
    """One role/content pair of the conversation."""

    role: str
    content: str


def _size(text: str) -> int:
    return len(text.encode("utf-8"))


class ContextManager:
    """Holds conversation messages and keeps them within the model's window."""

    def __init__(self, model_config: Optional[ModelConfig] = None) -> None:
        self.model_config = model_config
        self._messages: list[Message] = []

    def add_message(self, role: str, content: str) -> None:
        self._messages.append(Message(role, content))

    def count_tokens(self) -> int:
        """Approximate tokens as the byte length of every role and content."""
        return sum(_size(m.role) + _size(m.content) for m in self._messages)

    def compact_if_needed(self) -> None:
        if self.model_config is None:
            self.compact_if_needed_legacy(_LEGACY_THRESHOLD)
            return
        if self.should_compact():
            self._compact(self.model_config.compaction_threshold)

    def compact_if_needed_legacy(self, threshold: int) -> None:
        """Compact to half of ``threshold`` once the context exceeds it."""
        if self.count_tokens() > threshold:
            self._compact(threshold // 2)

    def _compact(self, target_tokens: int) -> None:
        # The first message is usually the system prompt, so drop the second.
        while len(self._messages) > 1 and self.count_tokens() > target_tokens:
            del self._messages[1 if len(self._messages) > 2 else 0]

    def messages(self) -> list[Message]:
        """Return a copy of the messages."""
        return list(self._messages)

    def clear(self) -> None:
        self._messages.clear()

    def __len__(self) -> int:
        return len(self._messages)

    def summary(self) -> str:
        if not self._messages:
            return "Empty context"
        counts = Counter(m.role for m in self._messages)
        breakdown = ", ".join(f"{role}: {count}" for role, count in counts.items())
        return f"{len(self._messages)} messages ({self.count_tokens()} tokens) - {breakdown}"

    def max_reply_tokens(self) -> int:
        if self.model_config is None:
            return _DEFAULT_MAX_REPLY_TOKENS
        return self.model_config.max_reply_tokens

    def max_context_tokens(self) -> int:
        if self.model_config is None:
            return _DEFAULT_MAX_CONTEXT_TOKENS
        return self.model_config.max_context_tokens

    def should_compact(self) -> bool:
        if self.model_config is None:
            return self.count_tokens() > _LEGACY_THRESHOLD
        return self.count_tokens() > self.model_config.compaction_threshold

    def compaction_info(self) -> dict[str, Any]:
        current = self.count_tokens()
        info: dict[str, Any] = {
            "current_tokens": current,
            "message_count": len(self._messages),
            "should_compact": self.should_compact(),
        }
        cfg = self.model_config
        if cfg is not None:
            info.update(
                max_context_tokens=cfg.max_context_tokens,
                max_reply_tokens=cfg.max_reply_tokens,
                compaction_buffer=cfg.compaction_buffer,
                available_for_reply=cfg.max_context_tokens - current,
                compaction_threshold=cfg.compaction_threshold,
                tokens_over_threshold=current - cfg.compaction_threshold,
            )
        return info