"""Chat message and configuration types.

These types hold no native resources and are independent of any template.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping

from .errors import InvalidParamError
from .types import SamplingConfig

Role = Literal["system", "user", "assistant"]
ROLES: tuple[str, ...] = ("system", "user", "assistant")


@dataclass(frozen=True)
class ChatMessage:
    """A single conversation turn."""

    role: Role
    content: str

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise InvalidParamError(f"Unknown chat role: {self.role!r}.", role=self.role)
        if not isinstance(self.content, str):
            raise InvalidParamError("Chat message content must be a string.")

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "ChatMessage":
        try:
            return cls(role=d["role"], content=d["content"])
        except KeyError as exc:
            raise InvalidParamError(f"Chat message is missing {exc.args[0]!r}.") from None


def _default_chat_sampling() -> SamplingConfig:
    return SamplingConfig(max_tokens=512, temperature=0.7, top_k=40, top_p=0.9, repeat_penalty=1.1)


@dataclass(frozen=True)
class ChatConfig:
    """Conversation settings.

    `max_history` bounds the number of stored user/assistant messages; the
    system prompt is kept separately and never trimmed.
    """

    template: str = "chatml"
    system_prompt: str | None = None
    max_history: int = 50
    sampling: SamplingConfig = field(default_factory=_default_chat_sampling)
    strip_response: bool = True

    def validate(self) -> None:
        if self.max_history <= 0:
            raise InvalidParamError("'max_history' must be > 0.", max_history=self.max_history)
        if not self.template:
            raise InvalidParamError("'template' must not be empty.")
        self.sampling.validate()
