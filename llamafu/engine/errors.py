"""Typed error taxonomy shared by every engine component.

Every failure raised by the engine is a `LlamafuError` carrying:
- `kind`: an `ErrorKind` discriminant
- `message`: human-readable text
- `context`: optional structured payload (path, adapter_id, media_type, ...)

Leaf classes exist for each kind so callers can `except` at whatever
granularity they need (`LoraError` for the whole family, `LoraNotFoundError`
for one case). `error.envelope()` returns a plain value object that is safe to
log or serialize.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class ErrorKind(str, enum.Enum):
    INVALID_PARAM = "invalidParam"
    OUT_OF_MEMORY = "outOfMemory"
    BUSY = "busy"

    MODEL_NOT_FOUND = "modelNotFound"
    MODEL_INVALID_FORMAT = "modelInvalidFormat"
    MODEL_LOAD_FAILED = "modelLoadFailed"
    MODEL_ALREADY_LOADED = "modelAlreadyLoaded"

    INFERENCE_FAILED = "inferenceFailed"
    CONTEXT_OVERFLOW = "contextOverflow"
    GENERATION_ABORTED = "generationAborted"
    GRAMMAR_INIT_FAILED = "grammarInitFailed"

    MULTIMODAL_NOT_SUPPORTED = "multimodalNotSupported"
    VISION_INIT_FAILED = "visionInitFailed"
    IMAGE_PROCESS_FAILED = "imageProcessFailed"
    AUDIO_PROCESS_FAILED = "audioProcessFailed"
    INVALID_MEDIA_FORMAT = "invalidMediaFormat"

    LORA_FILE_NOT_FOUND = "loraFileNotFound"
    LORA_INCOMPATIBLE = "loraIncompatible"
    LORA_LOAD_FAILED = "loraLoadFailed"
    LORA_NOT_FOUND = "loraNotFound"

    STATE_SAVE_FAILED = "stateSaveFailed"
    STATE_LOAD_FAILED = "stateLoadFailed"
    INVALID_STATE = "invalidState"


@dataclass(frozen=True)
class ErrorEnvelope:
    """Serializable description of a failure."""

    kind: ErrorKind
    message: str
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "context": dict(self.context)}


class LlamafuError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.INFERENCE_FAILED

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def envelope(self) -> ErrorEnvelope:
        return ErrorEnvelope(kind=self.kind, message=self.message, context=dict(self.context))

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v!r}" for k, v in sorted(self.context.items()))
        return f"{self.message} ({details})"


# =============================================================================
# Generic
# =============================================================================


class InvalidParamError(LlamafuError, ValueError):
    kind = ErrorKind.INVALID_PARAM


class OutOfMemoryError(LlamafuError):
    kind = ErrorKind.OUT_OF_MEMORY


class ResourceBusyError(LlamafuError):
    """Raised when a session (or sampler chain) is already in use."""

    kind = ErrorKind.BUSY


# =============================================================================
# Model loading
# =============================================================================


class ModelLoadError(LlamafuError):
    kind = ErrorKind.MODEL_LOAD_FAILED


class ModelNotFoundError(ModelLoadError):
    kind = ErrorKind.MODEL_NOT_FOUND


class ModelInvalidFormatError(ModelLoadError):
    kind = ErrorKind.MODEL_INVALID_FORMAT


class ModelLoadFailedError(ModelLoadError):
    kind = ErrorKind.MODEL_LOAD_FAILED


class ModelAlreadyLoadedError(ModelLoadError):
    kind = ErrorKind.MODEL_ALREADY_LOADED


# =============================================================================
# Inference
# =============================================================================


class InferenceError(LlamafuError):
    kind = ErrorKind.INFERENCE_FAILED


class InferenceFailedError(InferenceError):
    kind = ErrorKind.INFERENCE_FAILED


class ContextOverflowError(InferenceError):
    kind = ErrorKind.CONTEXT_OVERFLOW


class GenerationAbortedError(InferenceError):
    """Cooperative cancellation, raised only when the request asks for it.

    `partial_text` holds whatever was emitted before the abort.
    """

    kind = ErrorKind.GENERATION_ABORTED

    def __init__(self, message: str, *, partial_text: str = "", **context: Any) -> None:
        super().__init__(message, **context)
        self.partial_text = partial_text


class GrammarInitError(InferenceError):
    kind = ErrorKind.GRAMMAR_INIT_FAILED


# =============================================================================
# Multimodal
# =============================================================================


class MultimodalError(LlamafuError):
    kind = ErrorKind.MULTIMODAL_NOT_SUPPORTED


class MultimodalNotSupportedError(MultimodalError):
    kind = ErrorKind.MULTIMODAL_NOT_SUPPORTED


class VisionInitError(MultimodalError):
    kind = ErrorKind.VISION_INIT_FAILED


class ImageProcessError(MultimodalError):
    kind = ErrorKind.IMAGE_PROCESS_FAILED


class AudioProcessError(MultimodalError):
    kind = ErrorKind.AUDIO_PROCESS_FAILED


class InvalidMediaFormatError(MultimodalError):
    kind = ErrorKind.INVALID_MEDIA_FORMAT


# =============================================================================
# LoRA
# =============================================================================


class LoraError(LlamafuError):
    kind = ErrorKind.LORA_LOAD_FAILED


class LoraFileNotFoundError(LoraError):
    kind = ErrorKind.LORA_FILE_NOT_FOUND


class LoraIncompatibleError(LoraError):
    kind = ErrorKind.LORA_INCOMPATIBLE


class LoraLoadError(LoraError):
    kind = ErrorKind.LORA_LOAD_FAILED


class LoraNotFoundError(LoraError):
    kind = ErrorKind.LORA_NOT_FOUND


# =============================================================================
# State persistence
# =============================================================================


class StateError(LlamafuError):
    kind = ErrorKind.STATE_LOAD_FAILED


class StateSaveError(StateError):
    kind = ErrorKind.STATE_SAVE_FAILED


class StateLoadError(StateError):
    kind = ErrorKind.STATE_LOAD_FAILED


class InvalidStateError(StateError):
    kind = ErrorKind.INVALID_STATE


_KIND_TO_ERROR: dict[ErrorKind, type[LlamafuError]] = {
    ErrorKind.INVALID_PARAM: InvalidParamError,
    ErrorKind.OUT_OF_MEMORY: OutOfMemoryError,
    ErrorKind.BUSY: ResourceBusyError,
    ErrorKind.MODEL_NOT_FOUND: ModelNotFoundError,
    ErrorKind.MODEL_INVALID_FORMAT: ModelInvalidFormatError,
    ErrorKind.MODEL_LOAD_FAILED: ModelLoadFailedError,
    ErrorKind.MODEL_ALREADY_LOADED: ModelAlreadyLoadedError,
    ErrorKind.INFERENCE_FAILED: InferenceFailedError,
    ErrorKind.CONTEXT_OVERFLOW: ContextOverflowError,
    ErrorKind.GENERATION_ABORTED: GenerationAbortedError,
    ErrorKind.GRAMMAR_INIT_FAILED: GrammarInitError,
    ErrorKind.MULTIMODAL_NOT_SUPPORTED: MultimodalNotSupportedError,
    ErrorKind.VISION_INIT_FAILED: VisionInitError,
    ErrorKind.IMAGE_PROCESS_FAILED: ImageProcessError,
    ErrorKind.AUDIO_PROCESS_FAILED: AudioProcessError,
    ErrorKind.INVALID_MEDIA_FORMAT: InvalidMediaFormatError,
    ErrorKind.LORA_FILE_NOT_FOUND: LoraFileNotFoundError,
    ErrorKind.LORA_INCOMPATIBLE: LoraIncompatibleError,
    ErrorKind.LORA_LOAD_FAILED: LoraLoadError,
    ErrorKind.LORA_NOT_FOUND: LoraNotFoundError,
    ErrorKind.STATE_SAVE_FAILED: StateSaveError,
    ErrorKind.STATE_LOAD_FAILED: StateLoadError,
    ErrorKind.INVALID_STATE: InvalidStateError,
}


def error_for_kind(kind: ErrorKind | str, message: str, **context: Any) -> LlamafuError:
    """Build the concrete exception for `kind`."""
    kind = ErrorKind(kind)
    return _KIND_TO_ERROR[kind](message, **context)


# =============================================================================
# Backend error mapping
# =============================================================================


class BackendErrorCode(enum.IntEnum):
    """Native error codes reported by backends."""

    UNKNOWN = -1
    INVALID_PARAM = -2
    MODEL_LOAD_FAILED = -3
    OUT_OF_MEMORY = -4
    MULTIMODAL_NOT_SUPPORTED = -5
    LORA_LOAD_FAILED = -6
    LORA_NOT_FOUND = -7
    GRAMMAR_INIT_FAILED = -8
    CONTEXT_OVERFLOW = -9
    VISION_INIT_FAILED = -10
    STATE_IO_FAILED = -11


class BackendError(RuntimeError):
    """Failure reported by a backend (the native engine boundary)."""

    def __init__(self, code: BackendErrorCode | int, message: str = "") -> None:
        try:
            code = BackendErrorCode(code)
        except ValueError:
            code = BackendErrorCode.UNKNOWN
        self.code = code
        super().__init__(message or code.name.lower())


_CODE_TO_KIND: dict[BackendErrorCode, ErrorKind] = {
    BackendErrorCode.INVALID_PARAM: ErrorKind.INVALID_PARAM,
    BackendErrorCode.MODEL_LOAD_FAILED: ErrorKind.MODEL_LOAD_FAILED,
    BackendErrorCode.OUT_OF_MEMORY: ErrorKind.OUT_OF_MEMORY,
    BackendErrorCode.MULTIMODAL_NOT_SUPPORTED: ErrorKind.MULTIMODAL_NOT_SUPPORTED,
    BackendErrorCode.LORA_LOAD_FAILED: ErrorKind.LORA_LOAD_FAILED,
    BackendErrorCode.LORA_NOT_FOUND: ErrorKind.LORA_NOT_FOUND,
    BackendErrorCode.GRAMMAR_INIT_FAILED: ErrorKind.GRAMMAR_INIT_FAILED,
    BackendErrorCode.CONTEXT_OVERFLOW: ErrorKind.CONTEXT_OVERFLOW,
    BackendErrorCode.VISION_INIT_FAILED: ErrorKind.VISION_INIT_FAILED,
}


def _is_oom(exc: BaseException) -> bool:
    if isinstance(exc, MemoryError):
        return True
    try:
        import torch
    except ImportError:  # pragma: no cover
        return False
    oom_cls = getattr(getattr(torch, "cuda", None), "OutOfMemoryError", None)
    return isinstance(oom_cls, type) and isinstance(exc, oom_cls)


def map_backend_error(
    exc: BaseException,
    *,
    default: ErrorKind,
    message: str | None = None,
    **context: Any,
) -> LlamafuError:
    """Translate an exception raised by a backend into the closest error kind.

    `default` is the kind to use when nothing more specific can be inferred,
    usually the "failed" kind of the operation being attempted.
    """
    if isinstance(exc, LlamafuError):
        return exc

    kind = default
    if isinstance(exc, BackendError):
        if exc.code in _CODE_TO_KIND:
            kind = _CODE_TO_KIND[exc.code]
    elif _is_oom(exc):
        kind = ErrorKind.OUT_OF_MEMORY
    elif isinstance(exc, FileNotFoundError):
        if default in (ErrorKind.MODEL_LOAD_FAILED,):
            kind = ErrorKind.MODEL_NOT_FOUND
        elif default in (ErrorKind.LORA_LOAD_FAILED,):
            kind = ErrorKind.LORA_FILE_NOT_FOUND

    text = message or f"{default.value}: {exc}"
    if message and str(exc):
        text = f"{message}: {exc}"
    return error_for_kind(kind, text, **context)


def envelope_of(exc: BaseException) -> ErrorEnvelope:
    """Return an envelope for any exception (non-engine errors map to inferenceFailed)."""
    if isinstance(exc, LlamafuError):
        return exc.envelope()
    return ErrorEnvelope(kind=ErrorKind.INFERENCE_FAILED, message=str(exc) or type(exc).__name__)
