"""Base backend interface (the native engine boundary)."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Mapping, Sequence

from ..errors import BackendError, BackendErrorCode

if TYPE_CHECKING:
    import torch

    from ..media import DecodedMedia
    from ..types import GrammarConstraint, ModelConfig


@dataclass(frozen=True)
class ModelMetadata:
    """Static facts about a loaded model, reported by the backend."""

    architecture: str
    vocab_size: int
    embedding_size: int
    layer_count: int
    context_train: int | None = None
    bos_token_id: int | None = None
    eos_token_id: int | None = None
    multimodal: bool = False
    supports_image: bool = False
    supports_audio: bool = False
    image_size: tuple[int, int] | None = None  # projector input (width, height)
    audio_sample_rate: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class BaseBackend(ABC):
    """
    Abstract base class for inference backends.

    A backend owns the numerical side of inference: tokenization, the forward
    pass, the KV cache, projector inference and adapter application. The
    session layer only ever talks to a backend through this interface and
    treats the handle returned by `load_model` as opaque.

    Thread Safety:
        Backends are NOT expected to be thread-safe per handle. The session
        guarantees that at most one call touches a given handle at a time.
    """

    name: str = "base"

    # -------------------------------------------------------------------------
    # Model lifecycle
    # -------------------------------------------------------------------------

    @abstractmethod
    def load_model(self, config: "ModelConfig") -> Any:
        """
        Load the model (and projector, if configured) and create a context.

        Args:
            config: Validated model configuration.

        Returns:
            An opaque handle passed back to every other method.
        """
        pass

    @abstractmethod
    def free_model(self, handle: Any) -> None:
        """Release the context and model behind `handle`."""
        pass

    @abstractmethod
    def model_metadata(self, handle: Any) -> ModelMetadata:
        """Return static metadata about the loaded model."""
        pass

    # -------------------------------------------------------------------------
    # Tokens
    # -------------------------------------------------------------------------

    @abstractmethod
    def tokenize(self, handle: Any, text: str, *, add_special: bool = True) -> list[int]:
        pass

    @abstractmethod
    def detokenize(self, handle: Any, tokens: Sequence[int]) -> str:
        pass

    def is_end_of_generation(self, handle: Any, token: int) -> bool:
        """Whether `token` ends generation (EOS / EOT)."""
        eos = self.model_metadata(handle).eos_token_id
        return eos is not None and token == eos

    def apply_chat_template(self, handle: Any, messages: Sequence[Mapping[str, str]], add_assistant: bool) -> str:
        """Render `messages` with the chat template shipped with the model."""
        raise BackendError(
            BackendErrorCode.INVALID_PARAM,
            f"{self.name} backend does not expose the model's chat template.",
        )

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    @abstractmethod
    def evaluate(self, handle: Any, tokens: Sequence[int]) -> "torch.Tensor":
        """
        Append `tokens` to the context and run the forward pass.

        Returns:
            Logits for the last position, shape (vocab_size,).
        """
        pass

    def evaluate_embeddings(self, handle: Any, embeddings: "torch.Tensor") -> "torch.Tensor":
        """
        Append pre-computed input embeddings (shape (n, embedding_size)).

        Returns:
            Logits for the last position, shape (vocab_size,).
        """
        raise BackendError(
            BackendErrorCode.MULTIMODAL_NOT_SUPPORTED,
            f"{self.name} backend cannot evaluate raw embeddings.",
        )

    def get_embeddings(self, handle: Any, tokens: Sequence[int]) -> "torch.Tensor":
        """Pooled embedding vector for `tokens`, without touching the KV cache."""
        raise BackendError(BackendErrorCode.INVALID_PARAM, f"{self.name} backend does not expose embeddings.")

    def constrain_logits(
        self,
        handle: Any,
        grammar: "GrammarConstraint",
        logits: "torch.Tensor",
        generated: Sequence[int],
    ) -> "torch.Tensor":
        """Mask logits so only grammar-conforming tokens remain."""
        raise BackendError(
            BackendErrorCode.GRAMMAR_INIT_FAILED,
            f"{self.name} backend does not support grammar constraints.",
        )

    # -------------------------------------------------------------------------
    # KV cache / threads / state
    # -------------------------------------------------------------------------

    @abstractmethod
    def kv_cache_token_count(self, handle: Any) -> int:
        pass

    @abstractmethod
    def clear_kv_cache(self, handle: Any) -> None:
        pass

    def defragment_kv_cache(self, handle: Any) -> None:
        """Compact the KV cache. Default: nothing to do."""
        pass

    def set_threads(self, handle: Any, threads: int, threads_batch: int) -> None:
        """Change the thread counts used by subsequent evaluations."""
        pass

    @abstractmethod
    def save_state(self, handle: Any, path: str) -> None:
        """Write the context state (KV cache) to `path` as an opaque blob."""
        pass

    @abstractmethod
    def load_state(self, handle: Any, path: str) -> None:
        """Restore a blob written by `save_state`."""
        pass

    # -------------------------------------------------------------------------
    # LoRA
    # -------------------------------------------------------------------------

    def check_lora_compatibility(self, handle: Any, path: str) -> str | None:
        """Return a reason string if the adapter cannot apply to this model, else None."""
        return None

    def attach_lora(self, handle: Any, path: str, scale: float) -> Any:
        raise BackendError(BackendErrorCode.LORA_LOAD_FAILED, f"{self.name} backend does not support LoRA.")

    def set_lora_scale(self, handle: Any, adapter: Any, scale: float) -> None:
        raise BackendError(BackendErrorCode.LORA_NOT_FOUND, f"{self.name} backend does not support LoRA.")

    def detach_lora(self, handle: Any, adapter: Any) -> None:
        raise BackendError(BackendErrorCode.LORA_NOT_FOUND, f"{self.name} backend does not support LoRA.")

    # -------------------------------------------------------------------------
    # Multimodal
    # -------------------------------------------------------------------------

    def embed_media(self, handle: Any, media: "DecodedMedia") -> "torch.Tensor":
        """
        Run projector inference on decoded media.

        Returns:
            Embeddings of shape (n_tokens, embedding_size).
        """
        raise BackendError(
            BackendErrorCode.MULTIMODAL_NOT_SUPPORTED,
            f"{self.name} backend has no multimodal projector.",
        )
