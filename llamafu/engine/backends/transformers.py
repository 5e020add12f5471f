"""Backend built on PyTorch and Hugging Face Transformers.

GGUF checkpoints are loaded through `from_pretrained(..., gguf_file=...)`
(transformers dequantizes them); a directory holding a regular HF checkpoint
works as well. LoRA adapters are applied with `peft`. An optional vision
projector is loaded from `projector_path` as an HF vision model plus its
image processor.
"""

from __future__ import annotations

import gc
import itertools
import json
import logging
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Mapping, Sequence

from ..errors import BackendError, BackendErrorCode
from .base import BaseBackend, ModelMetadata

if TYPE_CHECKING:
    import torch

    from ..media import DecodedMedia
    from ..types import ModelConfig

logger = logging.getLogger(__name__)


# =============================================================================
# Context State
# =============================================================================


@dataclass
class _Projector:
    vision_model: Any
    processor: Any
    projection: Any = None  # maps vision hidden size to text hidden size
    image_size: tuple[int, int] | None = None


@dataclass
class _Context:
    """Internal state behind the opaque handle returned by `load_model`."""

    model: Any
    tokenizer: Any
    config: "ModelConfig"
    device: str
    dtype: Any
    past_key_values: Any = None
    n_past: int = 0
    # Evaluated inputs in order, used to rebuild the KV cache on load_state.
    segments: list[tuple[str, Any]] = field(default_factory=list)
    projector: _Projector | None = None
    lora_names: list[str] = field(default_factory=list)
    eos_ids: frozenset[int] = frozenset()


ModelLoader = Callable[["ModelConfig"], tuple[Any, Any]]
ProjectorLoader = Callable[["ModelConfig", Any], _Projector]


# =============================================================================
# Backend
# =============================================================================


class TransformersBackend(BaseBackend):
    """
    Backend running models with `transformers.AutoModelForCausalLM`.

    Thread Safety:
        NOT thread-safe per handle; the owning session serializes access.

    Args:
        model_loader: Optional callable `(config) -> (model, tokenizer)` replacing
            the default `from_pretrained` loading (useful for in-memory models).
        projector_loader: Optional callable `(config, model) -> _Projector`.
    """

    name = "transformers"

    def __init__(
        self,
        *,
        model_loader: ModelLoader | None = None,
        projector_loader: ProjectorLoader | None = None,
    ) -> None:
        self._model_loader = model_loader or _load_from_pretrained
        self._projector_loader = projector_loader or _load_projector
        self._lora_ids = itertools.count(1)

    # -------------------------------------------------------------------------
    # Model lifecycle
    # -------------------------------------------------------------------------

    def load_model(self, config: "ModelConfig") -> _Context:
        import torch

        from ...runtime import select_device

        if config.use_mlock or not config.use_mmap:
            logger.debug("use_mmap/use_mlock have no effect on the transformers backend")

        try:
            model, tokenizer = self._model_loader(config)
        except BackendError:
            raise
        except (MemoryError, FileNotFoundError):
            raise
        except Exception as exc:
            if _is_cuda_oom(exc):
                raise
            raise BackendError(BackendErrorCode.MODEL_LOAD_FAILED, f"Failed to load model: {exc}") from exc

        device = select_device(config.gpu_layers)
        dtype = _select_dtype(device)
        try:
            model = model.to(device=device, dtype=dtype)
        except Exception as exc:
            if _is_cuda_oom(exc):
                raise
            raise BackendError(BackendErrorCode.MODEL_LOAD_FAILED, f"Failed to place model on {device}: {exc}") from exc
        model.eval()

        torch.set_num_threads(config.threads)

        ctx = _Context(
            model=model,
            tokenizer=tokenizer,
            config=config,
            device=device,
            dtype=dtype,
            eos_ids=_collect_eos_ids(model, tokenizer),
        )

        if config.projector_path:
            try:
                ctx.projector = self._projector_loader(config, model)
            except BackendError:
                raise
            except Exception as exc:
                raise BackendError(
                    BackendErrorCode.VISION_INIT_FAILED, f"Failed to load projector: {exc}"
                ) from exc
            ctx.projector.vision_model.to(device=device, dtype=dtype).eval()
            if ctx.projector.projection is not None:
                ctx.projector.projection.to(device=device, dtype=dtype)

        logger.debug(
            "Loaded %s on %s (dtype=%s, threads=%d)",
            getattr(model.config, "model_type", "?"),
            device,
            dtype,
            config.threads,
        )
        return ctx

    def free_model(self, handle: _Context) -> None:
        import torch

        handle.past_key_values = None
        handle.segments.clear()
        handle.projector = None
        handle.model = None
        handle.tokenizer = None

        gc.collect()
        if torch.cuda.is_available():
            torch.cuda.empty_cache()

    def model_metadata(self, handle: _Context) -> ModelMetadata:
        cfg = _text_config(handle.model)
        projector = handle.projector
        tokenizer = handle.tokenizer
        return ModelMetadata(
            architecture=str(getattr(cfg, "model_type", None) or type(handle.model).__name__),
            vocab_size=int(getattr(cfg, "vocab_size", None) or len(tokenizer)),
            embedding_size=int(cfg.hidden_size),
            layer_count=int(cfg.num_hidden_layers),
            context_train=getattr(cfg, "max_position_embeddings", None),
            bos_token_id=getattr(tokenizer, "bos_token_id", None),
            eos_token_id=getattr(tokenizer, "eos_token_id", None),
            multimodal=projector is not None,
            supports_image=projector is not None,
            supports_audio=False,
            image_size=projector.image_size if projector is not None else None,
        )

    # -------------------------------------------------------------------------
    # Tokens
    # -------------------------------------------------------------------------

    def tokenize(self, handle: _Context, text: str, *, add_special: bool = True) -> list[int]:
        return list(handle.tokenizer.encode(text, add_special_tokens=add_special))

    def detokenize(self, handle: _Context, tokens: Sequence[int]) -> str:
        return handle.tokenizer.decode(list(tokens), skip_special_tokens=True)

    def apply_chat_template(
        self, handle: _Context, messages: Sequence[Mapping[str, str]], add_assistant: bool
    ) -> str:
        tokenizer = handle.tokenizer
        apply_chat_template = getattr(tokenizer, "apply_chat_template", None)
        if not callable(apply_chat_template) or getattr(tokenizer, "chat_template", None) is None:
            raise BackendError(BackendErrorCode.INVALID_PARAM, "Tokenizer has no chat template.")
        return apply_chat_template(
            [dict(m) for m in messages],
            tokenize=False,
            add_generation_prompt=add_assistant,
        )

    def is_end_of_generation(self, handle: _Context, token: int) -> bool:
        return int(token) in handle.eos_ids

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def evaluate(self, handle: _Context, tokens: Sequence[int]) -> "torch.Tensor":
        import torch

        tokens = [int(t) for t in tokens]
        if not tokens:
            raise BackendError(BackendErrorCode.INVALID_PARAM, "No tokens to evaluate.")
        self._check_room(handle, len(tokens))
        input_ids = torch.tensor([tokens], dtype=torch.long, device=handle.device)
        logits = self._forward(handle, input_ids=input_ids)
        handle.segments.append(("tokens", tokens))
        return logits

    def evaluate_embeddings(self, handle: _Context, embeddings: "torch.Tensor") -> "torch.Tensor":
        if embeddings.dim() != 2 or int(embeddings.shape[1]) != int(_text_config(handle.model).hidden_size):
            raise BackendError(
                BackendErrorCode.INVALID_PARAM,
                f"Embeddings must have shape (n, {_text_config(handle.model).hidden_size}), got {tuple(embeddings.shape)}.",
            )
        self._check_room(handle, int(embeddings.shape[0]))
        embeds = embeddings.to(device=handle.device, dtype=handle.dtype).unsqueeze(0)
        logits = self._forward(handle, inputs_embeds=embeds)
        handle.segments.append(("embeddings", embeddings.detach().to("cpu")))
        return logits

    def get_embeddings(self, handle: _Context, tokens: Sequence[int]) -> "torch.Tensor":
        import torch

        input_ids = torch.tensor([list(tokens)], dtype=torch.long, device=handle.device)
        with torch.inference_mode():
            out = handle.model(input_ids=input_ids, use_cache=False, output_hidden_states=True)
        hidden = out.hidden_states[-1][0]
        return hidden.float().mean(dim=0).cpu()

    def _forward(self, handle: _Context, **inputs: Any) -> "torch.Tensor":
        import torch

        try:
            with torch.inference_mode():
                out = handle.model(past_key_values=handle.past_key_values, use_cache=True, **inputs)
        except Exception as exc:
            if _is_cuda_oom(exc):
                raise
            raise BackendError(BackendErrorCode.UNKNOWN, f"Forward pass failed: {exc}") from exc

        n = int((inputs.get("input_ids") if "input_ids" in inputs else inputs["inputs_embeds"]).shape[1])
        handle.past_key_values = out.past_key_values
        handle.n_past += n
        return out.logits[0, -1].float()

    def _check_room(self, handle: _Context, n: int) -> None:
        if handle.n_past + n > handle.config.context_size:
            raise BackendError(
                BackendErrorCode.CONTEXT_OVERFLOW,
                f"Context full: {handle.n_past} + {n} > {handle.config.context_size}.",
            )

    # -------------------------------------------------------------------------
    # KV cache / threads / state
    # -------------------------------------------------------------------------

    def kv_cache_token_count(self, handle: _Context) -> int:
        return handle.n_past

    def clear_kv_cache(self, handle: _Context) -> None:
        handle.past_key_values = None
        handle.n_past = 0
        handle.segments.clear()

    def set_threads(self, handle: _Context, threads: int, threads_batch: int) -> None:
        import torch

        torch.set_num_threads(threads)

    def save_state(self, handle: _Context, path: str) -> None:
        import torch

        payload = {
            "n_past": handle.n_past,
            "segments": [(kind, data) for kind, data in handle.segments],
        }
        try:
            torch.save(payload, path)
        except OSError as exc:
            raise BackendError(BackendErrorCode.STATE_IO_FAILED, f"Failed to write state: {exc}") from exc

    def load_state(self, handle: _Context, path: str) -> None:
        import torch

        try:
            payload = torch.load(path, map_location="cpu")
        except OSError as exc:
            raise BackendError(BackendErrorCode.STATE_IO_FAILED, f"Failed to read state: {exc}") from exc
        if not isinstance(payload, dict) or "segments" not in payload:
            raise BackendError(BackendErrorCode.STATE_IO_FAILED, "Invalid engine state payload.")

        # Rebuild the KV cache by replaying the evaluated inputs.
        self.clear_kv_cache(handle)
        for kind, data in payload["segments"]:
            if kind == "tokens":
                self.evaluate(handle, data)
            else:
                self.evaluate_embeddings(handle, data)
        if handle.n_past != int(payload.get("n_past", handle.n_past)):
            raise BackendError(BackendErrorCode.STATE_IO_FAILED, "Replayed state does not match saved token count.")

    # -------------------------------------------------------------------------
    # LoRA (peft)
    # -------------------------------------------------------------------------

    def check_lora_compatibility(self, handle: _Context, path: str) -> str | None:
        if not os.path.isdir(path):
            return "expected a PEFT adapter directory (adapter_config.json + weights)"
        cfg_path = os.path.join(path, "adapter_config.json")
        if not os.path.isfile(cfg_path):
            return "adapter_config.json not found"
        try:
            with open(cfg_path, encoding="utf-8") as f:
                adapter_cfg = json.load(f)
        except (OSError, ValueError) as exc:
            return f"unreadable adapter_config.json: {exc}"

        targets = adapter_cfg.get("target_modules") or []
        if isinstance(targets, str):
            return None  # regex form; peft validates on attach
        module_names = {name.rsplit(".", 1)[-1] for name, _ in handle.model.named_modules()}
        if targets and not any(t in module_names for t in targets):
            return f"none of the target modules {sorted(targets)} exist in the model"
        return None

    def attach_lora(self, handle: _Context, path: str, scale: float) -> str:
        from peft import PeftModel

        adapter_name = f"llamafu_{next(self._lora_ids)}"
        try:
            if isinstance(handle.model, PeftModel):
                handle.model.load_adapter(path, adapter_name=adapter_name)
            else:
                handle.model = PeftModel.from_pretrained(handle.model, path, adapter_name=adapter_name)
        except FileNotFoundError:
            raise
        except Exception as exc:
            if _is_cuda_oom(exc):
                raise
            raise BackendError(BackendErrorCode.LORA_LOAD_FAILED, f"Failed to load LoRA adapter: {exc}") from exc

        handle.model.to(device=handle.device, dtype=handle.dtype).eval()
        handle.lora_names.append(adapter_name)
        handle.model.base_model.set_adapter(list(handle.lora_names))
        self.set_lora_scale(handle, adapter_name, scale)
        return adapter_name

    def set_lora_scale(self, handle: _Context, adapter: str, scale: float) -> None:
        from peft.tuners.lora import LoraLayer

        if adapter not in handle.lora_names:
            raise BackendError(BackendErrorCode.LORA_NOT_FOUND, f"Unknown adapter {adapter!r}.")
        for module in handle.model.modules():
            if isinstance(module, LoraLayer) and adapter in module.scaling:
                module.set_scale(adapter, scale)

    def detach_lora(self, handle: _Context, adapter: str) -> None:
        if adapter not in handle.lora_names:
            raise BackendError(BackendErrorCode.LORA_NOT_FOUND, f"Unknown adapter {adapter!r}.")
        handle.lora_names.remove(adapter)
        if not handle.lora_names:
            # Strip every LoRA layer and go back to the plain base model.
            handle.model = handle.model.unload()
            return
        handle.model.delete_adapter(adapter)
        handle.model.base_model.set_adapter(list(handle.lora_names))

    # -------------------------------------------------------------------------
    # Multimodal
    # -------------------------------------------------------------------------

    def embed_media(self, handle: _Context, media: "DecodedMedia") -> "torch.Tensor":
        import torch

        projector = handle.projector
        if projector is None or media.media_type != "image":
            raise BackendError(
                BackendErrorCode.MULTIMODAL_NOT_SUPPORTED,
                f"No projector for {media.media_type} input.",
            )

        inputs = projector.processor(images=media.to_pil(), return_tensors="pt")
        pixel_values = inputs["pixel_values"].to(device=handle.device, dtype=handle.dtype)
        with torch.inference_mode():
            out = projector.vision_model(pixel_values=pixel_values)
            hidden = out.last_hidden_state[0]
            if projector.projection is not None:
                hidden = projector.projection(hidden)
        return hidden.float().cpu()


# =============================================================================
# Loading helpers
# =============================================================================


def _split_model_path(model_path: str) -> tuple[str, dict[str, Any]]:
    """Return (from_pretrained location, extra kwargs) for a model path."""
    if os.path.isfile(model_path):
        directory, filename = os.path.split(os.path.abspath(model_path))
        return directory, {"gguf_file": filename}
    return model_path, {}


def _load_from_pretrained(config: "ModelConfig") -> tuple[Any, Any]:
    from transformers import AutoModelForCausalLM, AutoTokenizer

    location, kwargs = _split_model_path(config.model_path)
    extra = dict(config.extra)
    trust_remote_code = bool(extra.pop("trust_remote_code", False))

    tokenizer = AutoTokenizer.from_pretrained(location, trust_remote_code=trust_remote_code, **kwargs)
    model = AutoModelForCausalLM.from_pretrained(
        location,
        trust_remote_code=trust_remote_code,
        **kwargs,
        **extra,
    )
    return model, tokenizer


def _load_projector(config: "ModelConfig", model: Any) -> _Projector:
    import torch
    from transformers import AutoImageProcessor, AutoModel

    assert config.projector_path is not None
    location, kwargs = _split_model_path(config.projector_path)
    processor = AutoImageProcessor.from_pretrained(location, **kwargs)
    vision = AutoModel.from_pretrained(location, **kwargs)
    vision_model = getattr(vision, "vision_model", vision)

    vision_hidden = int(getattr(getattr(vision_model, "config", None), "hidden_size", 0) or 0)
    text_hidden = int(_text_config(model).hidden_size)
    projection = getattr(vision, "multi_modal_projector", None)
    if projection is None and vision_hidden and vision_hidden != text_hidden:
        raise BackendError(
            BackendErrorCode.VISION_INIT_FAILED,
            f"Projector hidden size {vision_hidden} does not match model hidden size {text_hidden}.",
        )

    image_size = None
    size = getattr(processor, "size", None)
    if isinstance(size, dict):
        if "height" in size and "width" in size:
            image_size = (int(size["width"]), int(size["height"]))
        elif "shortest_edge" in size:
            image_size = (int(size["shortest_edge"]), int(size["shortest_edge"]))
    elif isinstance(size, int):
        image_size = (size, size)

    if isinstance(projection, torch.nn.Module):
        projection.eval()
    return _Projector(vision_model=vision_model, processor=processor, projection=projection, image_size=image_size)


def _text_config(model: Any) -> Any:
    cfg = model.config
    return getattr(cfg, "text_config", None) or cfg


def _select_dtype(device: str) -> Any:
    import torch

    from ...runtime import get_cuda_capability

    if device != "cuda":
        return torch.float32
    capability = get_cuda_capability(torch.cuda.current_device())
    # bf16 needs Ampere (sm_80) or newer.
    if capability is not None and capability >= (8, 0):
        return torch.bfloat16
    return torch.float16


def _collect_eos_ids(model: Any, tokenizer: Any) -> frozenset[int]:
    ids: set[int] = set()
    sources = [
        getattr(tokenizer, "eos_token_id", None),
        getattr(model.config, "eos_token_id", None),
        getattr(getattr(model, "generation_config", None), "eos_token_id", None),
    ]
    for value in sources:
        if value is None:
            continue
        if isinstance(value, (list, tuple, set)):
            ids.update(int(v) for v in value)
        else:
            ids.add(int(value))
    return frozenset(ids)


def _is_cuda_oom(exc: BaseException) -> bool:
    import torch

    oom_cls = getattr(torch.cuda, "OutOfMemoryError", None)
    return isinstance(oom_cls, type) and isinstance(exc, oom_cls)
