"""Chat templates.

A template is a pure function of (messages, add-assistant-turn flag) plus the
stop sequences that end an assistant turn in that format.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Sequence

from .chat_types import ChatMessage
from .errors import InvalidParamError

if TYPE_CHECKING:
    from .session import ModelSession

RenderFn = Callable[[Sequence[ChatMessage], bool], str]

# Renders with the chat template bundled with the loaded model (tokenizer config).
MODEL_TEMPLATE = "model"


@dataclass(frozen=True)
class ChatTemplate:
    name: str
    render_fn: RenderFn
    stop: tuple[str, ...] = ()

    def render(self, messages: Sequence[ChatMessage], add_assistant: bool = True) -> str:
        return self.render_fn(tuple(messages), add_assistant)


def _split_system(messages: Sequence[ChatMessage]) -> tuple[str | None, list[ChatMessage]]:
    system = [m.content for m in messages if m.role == "system"]
    rest = [m for m in messages if m.role != "system"]
    return ("\n\n".join(system) if system else None), rest


# =============================================================================
# Built-in formats
# =============================================================================


def _chatml(messages: Sequence[ChatMessage], add_assistant: bool) -> str:
    out = "".join(f"<|im_start|>{m.role}\n{m.content}<|im_end|>\n" for m in messages)
    if add_assistant:
        out += "<|im_start|>assistant\n"
    return out


def _llama2(messages: Sequence[ChatMessage], add_assistant: bool) -> str:
    system, rest = _split_system(messages)
    out = ""
    first_user = True
    for m in rest:
        if m.role == "user":
            content = m.content
            if first_user and system:
                content = f"<<SYS>>\n{system}\n<</SYS>>\n\n{content}"
            first_user = False
            out += f"<s>[INST] {content} [/INST]"
        else:
            out += f" {m.content} </s>"
    return out


def _llama3(messages: Sequence[ChatMessage], add_assistant: bool) -> str:
    out = "".join(
        f"<|start_header_id|>{m.role}<|end_header_id|>\n\n{m.content.strip()}<|eot_id|>" for m in messages
    )
    if add_assistant:
        out += "<|start_header_id|>assistant<|end_header_id|>\n\n"
    return out


def _mistral(messages: Sequence[ChatMessage], add_assistant: bool) -> str:
    system, rest = _split_system(messages)
    out = ""
    first_user = True
    for m in rest:
        if m.role == "user":
            content = f"{system}\n\n{m.content}" if first_user and system else m.content
            first_user = False
            out += f"[INST] {content} [/INST]"
        else:
            out += f"{m.content}</s>"
    return out


def _gemma(messages: Sequence[ChatMessage], add_assistant: bool) -> str:
    system, rest = _split_system(messages)
    out = ""
    first_user = True
    for m in rest:
        role = "model" if m.role == "assistant" else "user"
        content = m.content
        if m.role == "user" and first_user and system:
            content = f"{system}\n\n{content}"
        if m.role == "user":
            first_user = False
        out += f"<start_of_turn>{role}\n{content}<end_of_turn>\n"
    if add_assistant:
        out += "<start_of_turn>model\n"
    return out


def _phi3(messages: Sequence[ChatMessage], add_assistant: bool) -> str:
    out = "".join(f"<|{m.role}|>\n{m.content}<|end|>\n" for m in messages)
    if add_assistant:
        out += "<|assistant|>\n"
    return out


def _alpaca(messages: Sequence[ChatMessage], add_assistant: bool) -> str:
    system, rest = _split_system(messages)
    out = f"{system}\n\n" if system else ""
    for m in rest:
        if m.role == "user":
            out += f"### Instruction:\n{m.content}\n\n"
        else:
            out += f"### Response:\n{m.content}\n\n"
    if add_assistant:
        out += "### Response:\n"
    return out


def _vicuna(messages: Sequence[ChatMessage], add_assistant: bool) -> str:
    system, rest = _split_system(messages)
    out = f"{system}\n\n" if system else ""
    for m in rest:
        if m.role == "user":
            out += f"USER: {m.content}\n"
        else:
            out += f"ASSISTANT: {m.content}</s>\n"
    if add_assistant:
        out += "ASSISTANT:"
    return out


def _zephyr(messages: Sequence[ChatMessage], add_assistant: bool) -> str:
    out = "".join(f"<|{m.role}|>\n{m.content}</s>\n" for m in messages)
    if add_assistant:
        out += "<|assistant|>\n"
    return out


def _plain(messages: Sequence[ChatMessage], add_assistant: bool) -> str:
    lines = [f"{m.role.capitalize()}: {m.content}" for m in messages]
    if add_assistant:
        lines.append("Assistant:")
    return "\n".join(lines)


_TEMPLATE_REGISTRY: dict[str, ChatTemplate] = {
    t.name: t
    for t in (
        ChatTemplate("chatml", _chatml, ("<|im_end|>",)),
        ChatTemplate("llama2", _llama2, ("</s>", "[INST]")),
        ChatTemplate("llama3", _llama3, ("<|eot_id|>",)),
        ChatTemplate("mistral", _mistral, ("</s>", "[INST]")),
        ChatTemplate("gemma", _gemma, ("<end_of_turn>",)),
        ChatTemplate("phi3", _phi3, ("<|end|>",)),
        ChatTemplate("alpaca", _alpaca, ("### Instruction:",)),
        ChatTemplate("vicuna", _vicuna, ("USER:", "</s>")),
        ChatTemplate("zephyr", _zephyr, ("</s>",)),
        ChatTemplate("plain", _plain, ("\nUser:",)),
    )
}


def get_template(name: str) -> ChatTemplate:
    """Look up a registered template by name."""
    if name == MODEL_TEMPLATE:
        raise InvalidParamError(
            f"The {MODEL_TEMPLATE!r} template needs a loaded model; use model_template(session).",
            template=name,
        )
    if name not in _TEMPLATE_REGISTRY:
        available = ", ".join([*_TEMPLATE_REGISTRY.keys(), MODEL_TEMPLATE])
        raise InvalidParamError(f"Unknown chat template: {name!r}. Available: {available}", template=name)
    return _TEMPLATE_REGISTRY[name]


def model_template(session: "ModelSession") -> ChatTemplate:
    """Template that defers to the model's own chat template (e.g. a HF tokenizer's Jinja template).

    Turn boundaries come from the model's end-of-generation tokens, so no
    extra stop sequences are added.
    """
    return ChatTemplate(MODEL_TEMPLATE, session.apply_chat_template)


def register_template(template: ChatTemplate) -> None:
    """Register (or replace) a template under `template.name`."""
    _TEMPLATE_REGISTRY[template.name] = template


def list_templates() -> list[str]:
    return list(_TEMPLATE_REGISTRY.keys())


def render(template: str | ChatTemplate, messages: Sequence[ChatMessage], add_assistant: bool = True) -> str:
    if isinstance(template, str):
        template = get_template(template)
    return template.render(messages, add_assistant)
