"""Engine request, response and configuration types.

These types are used by the session, the stream controller and the backends.
They hold no native resources.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from typing import TYPE_CHECKING, Any, Literal, Sequence

from .errors import InvalidParamError

if TYPE_CHECKING:
    from .media import MediaInput
    from .sampling import SamplerChain
    from .stream import CancellationToken


FinishReason = Literal["stop", "length", "cancelled", "error"]
LoraCompositionName = Literal["additive", "weighted", "last_wins"]


def _default_threads() -> int:
    from ..runtime import default_thread_count

    return default_thread_count()


def _default_backend() -> str:
    return os.environ.get("LLAMAFU_BACKEND", "transformers")


@dataclass(frozen=True)
class MediaConfig:
    """Media pipeline defaults."""

    use_cache: bool = True
    auto_resize: bool = True
    audio_sample_rate: int = 16_000
    auto_resample: bool = True
    max_media_bytes: int = 64 * 1024 * 1024
    url_timeout_s: float = 30.0

    def validate(self) -> None:
        if self.audio_sample_rate <= 0:
            raise InvalidParamError("'media.audio_sample_rate' must be > 0.")
        if self.max_media_bytes <= 0:
            raise InvalidParamError("'media.max_media_bytes' must be > 0.")
        if self.url_timeout_s <= 0:
            raise InvalidParamError("'media.url_timeout_s' must be > 0.")


@dataclass(frozen=True)
class ModelConfig:
    """Construction parameters of a model session.

    Everything except the thread counts is fixed for the lifetime of the
    session; changing it means disposing the session and loading a new one.
    """

    model_path: str
    projector_path: str | None = None
    context_size: int = 512
    threads: int = field(default_factory=_default_threads)
    threads_batch: int | None = None
    gpu_layers: int = 0
    use_mmap: bool = True
    use_mlock: bool = False
    seed: int | None = None
    backend: str = field(default_factory=_default_backend)
    lora_composition: LoraCompositionName = "additive"
    media: MediaConfig = field(default_factory=MediaConfig)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def effective_threads_batch(self) -> int:
        return self.threads_batch if self.threads_batch is not None else self.threads

    def validate(self) -> None:
        if not self.model_path:
            raise InvalidParamError("'model_path' is required.")
        if self.context_size <= 0:
            raise InvalidParamError("'context_size' must be > 0.", context_size=self.context_size)
        if self.threads <= 0:
            raise InvalidParamError("'threads' must be > 0.", threads=self.threads)
        if self.threads_batch is not None and self.threads_batch <= 0:
            raise InvalidParamError("'threads_batch' must be > 0.", threads_batch=self.threads_batch)
        if self.gpu_layers < -1:
            raise InvalidParamError("'gpu_layers' must be >= -1 (-1 offloads all layers).")
        if self.lora_composition not in ("additive", "weighted", "last_wins"):
            raise InvalidParamError(f"Unknown lora_composition: {self.lora_composition!r}.")
        self.media.validate()


@dataclass(frozen=True)
class SamplingConfig:
    """Per-request sampling settings.

    Used to build the default sampler chain when the request carries no
    custom chain. `max_tokens`, `stop` and `seed` apply in both cases.
    """

    max_tokens: int = 128
    temperature: float = 0.8
    top_k: int = 40
    top_p: float = 0.95
    min_p: float = 0.05
    typical_p: float = 1.0
    repeat_penalty: float = 1.1
    repeat_last_n: int = 64
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    mirostat: int = 0  # 0 = off, 1 = v1, 2 = v2
    mirostat_tau: float = 5.0
    mirostat_eta: float = 0.1
    seed: int | None = None
    stop: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if isinstance(self.stop, str):
            object.__setattr__(self, "stop", (self.stop,))
        else:
            object.__setattr__(self, "stop", tuple(self.stop))

    def validate(self) -> None:
        if self.max_tokens <= 0:
            raise InvalidParamError("'max_tokens' must be > 0.", max_tokens=self.max_tokens)
        if self.temperature < 0:
            raise InvalidParamError("'temperature' must be >= 0.", temperature=self.temperature)
        if self.top_k < 0:
            raise InvalidParamError("'top_k' must be >= 0.", top_k=self.top_k)
        if not 0.0 < self.top_p <= 1.0:
            raise InvalidParamError("'top_p' must be in (0, 1].", top_p=self.top_p)
        if not 0.0 <= self.min_p <= 1.0:
            raise InvalidParamError("'min_p' must be in [0, 1].", min_p=self.min_p)
        if not 0.0 < self.typical_p <= 1.0:
            raise InvalidParamError("'typical_p' must be in (0, 1].", typical_p=self.typical_p)
        if self.repeat_penalty <= 0:
            raise InvalidParamError("'repeat_penalty' must be > 0.", repeat_penalty=self.repeat_penalty)
        if self.repeat_last_n < 0:
            raise InvalidParamError("'repeat_last_n' must be >= 0.", repeat_last_n=self.repeat_last_n)
        if self.mirostat not in (0, 1, 2):
            raise InvalidParamError("'mirostat' must be 0, 1 or 2.", mirostat=self.mirostat)
        if self.mirostat and (self.mirostat_tau <= 0 or self.mirostat_eta <= 0):
            raise InvalidParamError("'mirostat_tau' and 'mirostat_eta' must be > 0.")
        if any(not s for s in self.stop):
            raise InvalidParamError("Stop sequences must be non-empty strings.")

    def merged(self, override: "SamplingConfig | dict[str, Any] | None") -> "SamplingConfig":
        """Merge request-level overrides into these defaults."""
        if override is None:
            return self
        if isinstance(override, SamplingConfig):
            override.validate()
            return override
        if not isinstance(override, dict):
            raise InvalidParamError("Sampling overrides must be a SamplingConfig or a dict.")

        known = {f.name for f in fields(self)}
        data = dict(override)
        if "stop_sequences" in data and "stop" not in data:
            data["stop"] = data.pop("stop_sequences")
        unknown = sorted(set(data) - known)
        if unknown:
            raise InvalidParamError(f"Unknown sampling option(s): {', '.join(unknown)}.")

        merged = replace(self, **data)
        merged.validate()
        return merged


@dataclass(frozen=True)
class GrammarConstraint:
    """A grammar (GBNF text) restricting which tokens may be generated."""

    grammar: str
    root: str = "root"

    def validate(self) -> None:
        if not self.grammar or not self.grammar.strip():
            raise InvalidParamError("Grammar text must not be empty.")
        if not self.root:
            raise InvalidParamError("Grammar root rule must not be empty.")


@dataclass(frozen=True)
class GenerationRequest:
    """A request for text generation. Immutable once submitted."""

    prompt: str | Sequence[int]
    media: tuple["MediaInput", ...] = ()
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    sampler_chain: "SamplerChain | None" = None
    grammar: GrammarConstraint | None = None
    cancel: "CancellationToken | None" = None
    raise_on_cancel: bool = False
    continue_sampler_state: bool = False
    add_special: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.prompt, str):
            object.__setattr__(self, "prompt", tuple(int(t) for t in self.prompt))
        object.__setattr__(self, "media", tuple(self.media))

    @property
    def is_tokenized(self) -> bool:
        return not isinstance(self.prompt, str)

    def validate(self) -> None:
        if isinstance(self.prompt, str):
            if not self.prompt and not self.media:
                raise InvalidParamError("Prompt must not be empty.")
        elif not self.prompt:
            raise InvalidParamError("Token prompt must not be empty.")
        elif self.media:
            raise InvalidParamError("Media inputs require a text prompt (media markers are textual).")
        elif any(t < 0 for t in self.prompt):
            raise InvalidParamError("Token ids must be >= 0.")
        self.sampling.validate()
        if self.grammar is not None:
            self.grammar.validate()


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class Timing:
    prefill_s: float | None = None
    decode_s: float | None = None
    total_s: float | None = None
    tok_per_s: float | None = None
    media_s: float | None = None


@dataclass(frozen=True)
class GenerateResponse:
    """Response from a blocking generation."""

    text: str
    usage: Usage
    timing: Timing
    finish_reason: FinishReason = "stop"

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class AdapterInfo:
    """Snapshot of a loaded LoRA adapter."""

    adapter_id: int
    path: str
    name: str
    scale: float
    effective_scale: float
    compatibility_tag: str | None


@dataclass(frozen=True)
class ModelInfo:
    """Information about a loaded model session."""

    model_path: str
    backend: str
    architecture: str
    vocab_size: int
    embedding_size: int
    layer_count: int
    context_size: int
    threads: int
    threads_batch: int
    gpu_layers: int
    multimodal: bool
    kv_cache_tokens: int
    adapters: tuple[AdapterInfo, ...] = ()
    extra: dict[str, Any] = field(default_factory=dict)
