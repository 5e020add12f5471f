"""Stateful conversation on top of a `ModelSession`.

Holds history and a template; every turn re-renders the whole conversation
and runs a fresh generation (the session clears its KV cache per prompt).
Holds no native resources.
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Mapping

from .chat_types import ChatConfig, ChatMessage, Role
from .errors import InvalidParamError, InvalidStateError
from .templates import MODEL_TEMPLATE, ChatTemplate, get_template, model_template

if TYPE_CHECKING:
    from .session import ModelSession
    from .stream import GenerationState, TokenStream
    from .types import GenerateResponse, SamplingConfig

logger = logging.getLogger(__name__)

_JSON_VERSION = 1


class ChatSession:
    """A conversation: optional system prompt, message history and a template."""

    def __init__(
        self,
        session: "ModelSession",
        config: ChatConfig | None = None,
        *,
        template: str | ChatTemplate | None = None,
        system_prompt: str | None = None,
    ) -> None:
        config = config or ChatConfig()
        if isinstance(template, str):
            config = replace(config, template=template)
        if system_prompt is not None:
            config = replace(config, system_prompt=system_prompt)
        config.validate()

        self._session = session
        self._config = config
        if isinstance(template, ChatTemplate):
            self._template = template
        elif config.template == MODEL_TEMPLATE:
            self._template = model_template(session)
        else:
            self._template = get_template(config.template)
        self._system_prompt = config.system_prompt
        self._messages: list[ChatMessage] = []

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    @property
    def config(self) -> ChatConfig:
        return self._config

    @property
    def template(self) -> ChatTemplate:
        return self._template

    @property
    def system_prompt(self) -> str | None:
        return self._system_prompt

    @system_prompt.setter
    def system_prompt(self, value: str | None) -> None:
        self._system_prompt = value

    @property
    def history(self) -> tuple[ChatMessage, ...]:
        """Stored user/assistant messages (without the system prompt)."""
        return tuple(self._messages)

    def messages(self) -> list[ChatMessage]:
        """The full conversation as rendered, system prompt first."""
        out: list[ChatMessage] = []
        if self._system_prompt:
            out.append(ChatMessage("system", self._system_prompt))
        out.extend(self._messages)
        return out

    def append(self, message: ChatMessage | Role, content: str | None = None) -> None:
        if not isinstance(message, ChatMessage):
            if content is None:
                raise InvalidParamError("append(role, content) requires content.")
            message = ChatMessage(message, content)
        if message.role == "system":
            self._system_prompt = message.content
            return
        self._messages.append(message)
        self._trim()

    def clear(self) -> None:
        """Forget all messages; the system prompt is kept."""
        self._messages.clear()

    def undo_last(self) -> list[ChatMessage]:
        """Remove the last exchange (trailing assistant reply and its user message)."""
        removed: list[ChatMessage] = []
        if self._messages and self._messages[-1].role == "assistant":
            removed.append(self._messages.pop())
        if self._messages and self._messages[-1].role == "user":
            removed.append(self._messages.pop())
        removed.reverse()
        return removed

    def _trim(self) -> None:
        excess = len(self._messages) - self._config.max_history
        if excess > 0:
            del self._messages[:excess]
            logger.debug("Trimmed %d message(s) from chat history", excess)

    # -------------------------------------------------------------------------
    # Rendering / generation
    # -------------------------------------------------------------------------

    def render(self, add_assistant: bool = True) -> str:
        return self._template.render(self.messages(), add_assistant)

    def _sampling(self, overrides: Mapping[str, Any]) -> "SamplingConfig":
        sampling = self._config.sampling.merged(dict(overrides) if overrides else None)
        stop = tuple(dict.fromkeys(tuple(sampling.stop) + self._template.stop))
        return replace(sampling, stop=stop)

    def send(self, text: str, **overrides: Any) -> "GenerateResponse":
        """Append a user message, generate the reply and record it."""
        self.append(ChatMessage("user", text))
        return self._reply(overrides)

    def send_stream(self, text: str, **overrides: Any) -> "TokenStream":
        """Like `send`, but stream the reply. It is recorded when the stream finishes."""
        self.append(ChatMessage("user", text))
        return self._reply_stream(overrides)

    def regenerate(self, **overrides: Any) -> "GenerateResponse":
        """Drop the last assistant reply and generate a new one for the same user message.

        If generation fails the previous reply is kept.
        """
        snapshot = self._rewind_to_user("regenerate")
        return self._reply(overrides, restore=snapshot)

    def edit_last(self, text: str, **overrides: Any) -> "GenerateResponse":
        """Replace the last user message with `text` and generate a fresh reply.

        A trailing assistant reply is discarded. If generation fails the
        conversation is left as it was.
        """
        snapshot = self._rewind_to_user("edit")
        self._messages[-1] = ChatMessage("user", text)
        return self._reply(overrides, restore=snapshot)

    def _rewind_to_user(self, action: str) -> list[ChatMessage]:
        snapshot = list(self._messages)
        if self._messages and self._messages[-1].role == "assistant":
            self._messages.pop()
        if not self._messages or self._messages[-1].role != "user":
            self._messages[:] = snapshot
            raise InvalidParamError(f"Nothing to {action}: the conversation has no user message to answer.")
        return snapshot

    def _reply(
        self, overrides: Mapping[str, Any], *, restore: list[ChatMessage] | None = None
    ) -> "GenerateResponse":
        try:
            sampling = self._sampling(overrides)
            response = self._session.generate(self.render(add_assistant=True), sampling=sampling)
        except BaseException:
            if restore is None:
                self._drop_pending_user()
            else:
                self._messages[:] = restore
            raise
        self._record_reply(response.text)
        return response

    def _reply_stream(self, overrides: Mapping[str, Any]) -> "TokenStream":
        try:
            sampling = self._sampling(overrides)
            stream = self._session.generate_stream(self.render(add_assistant=True), sampling=sampling)
        except BaseException:
            self._drop_pending_user()
            raise

        def on_done(state: "GenerationState") -> None:
            if state.finish_reason != "error" and state.text.strip():
                self._record_reply(state.text)
            else:
                self._drop_pending_user()

        stream.add_done_callback(on_done)
        return stream

    def _record_reply(self, text: str) -> None:
        if self._config.strip_response:
            text = text.strip()
        self._messages.append(ChatMessage("assistant", text))
        self._trim()

    def _drop_pending_user(self) -> None:
        if self._messages and self._messages[-1].role == "user":
            self._messages.pop()

    # -------------------------------------------------------------------------
    # Import / export
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": _JSON_VERSION,
            "template": self._template.name,
            "system_prompt": self._system_prompt,
            "max_history": self._config.max_history,
            "messages": [m.to_dict() for m in self._messages],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        session: "ModelSession",
        config: ChatConfig | None = None,
    ) -> "ChatSession":
        if data.get("version", _JSON_VERSION) != _JSON_VERSION:
            raise InvalidStateError(f"Unsupported chat export version: {data.get('version')!r}.")
        config = config or ChatConfig()
        config = replace(
            config,
            template=str(data.get("template") or config.template),
            system_prompt=data.get("system_prompt", config.system_prompt),
            max_history=int(data.get("max_history") or config.max_history),
        )
        chat = cls(session, config)
        messages = data.get("messages") or []
        if not isinstance(messages, list):
            raise InvalidStateError("Chat export 'messages' must be a list.")
        for m in messages:
            chat.append(ChatMessage.from_dict(m))
        return chat

    @classmethod
    def from_json(cls, text: str, session: "ModelSession", config: ChatConfig | None = None) -> "ChatSession":
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise InvalidStateError(f"Invalid chat JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise InvalidStateError("Chat JSON must be an object.")
        return cls.from_dict(data, session, config)
