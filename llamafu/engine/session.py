"""Model session: owns one loaded model and its context.

The session is the single owner of the backend handle. Every operation that
touches the KV cache, the model weights or the projector goes through one
exclusive section; a second caller is rejected immediately with
`ResourceBusyError` instead of queueing.

Generation:
1. Decode media (outside the lock) and validate the request.
2. Take the lock, tokenize, splice media embeddings at `<__media__>`,
   `<image>` or `<audio>` markers (before the text when there are none).
3. Clear the KV cache and evaluate the prompt.
4. Loop: sampler chain -> emit text -> stop checks -> evaluate the token.

Blocking `generate()` drains the same `TokenStream` that `generate_stream()`
returns.
"""

from __future__ import annotations

import logging
import os
import re
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, fields, replace
from typing import TYPE_CHECKING, Any, Iterator, Sequence

import torch

from .backends.base import BaseBackend, ModelMetadata
from .errors import (
    ContextOverflowError,
    ErrorKind,
    GenerationAbortedError,
    InvalidParamError,
    LlamafuError,
    ModelAlreadyLoadedError,
    ModelInvalidFormatError,
    ModelNotFoundError,
    ResourceBusyError,
    StateLoadError,
    VisionInitError,
    map_backend_error,
)
from .lora import AdapterRegistry
from .media import DecodedMedia, MediaPipeline
from .sampling import SamplerChain
from .state import (
    ENGINE_FILE,
    check_compatible,
    compute_compatibility,
    load_sampler_payload,
    read_manifest,
    state_file,
    write_state,
)
from .stream import CancellationToken, GenerationState, IncrementalDetokenizer, StopSequenceFilter, TokenStream
from .types import FinishReason, GenerateResponse, GenerationRequest, ModelConfig, ModelInfo, SamplingConfig

if TYPE_CHECKING:
    from .chat_types import ChatMessage
    from .types import GrammarConstraint

logger = logging.getLogger(__name__)

GGUF_MAGIC = b"GGUF"
MEDIA_MARKER_RE = re.compile(r"<__media__>|<image>|<audio>")

_REQUEST_FIELDS = frozenset(f.name for f in fields(GenerationRequest)) - {"prompt"}
_SAMPLING_FIELDS = frozenset(f.name for f in fields(SamplingConfig)) | {"stop_sequences"}


def check_model_file(model_path: str) -> None:
    """Fail fast on a missing model or one that is not GGUF (or an HF checkpoint directory)."""
    if not os.path.exists(model_path):
        raise ModelNotFoundError(f"Model not found: {model_path}", path=model_path)
    if os.path.isdir(model_path):
        if not os.path.isfile(os.path.join(model_path, "config.json")):
            raise ModelInvalidFormatError(
                "Model directory has no config.json.", path=model_path
            )
        return
    try:
        with open(model_path, "rb") as f:
            magic = f.read(len(GGUF_MAGIC))
    except OSError as exc:
        raise ModelNotFoundError(f"Model not readable: {exc}", path=model_path) from exc
    if magic != GGUF_MAGIC:
        raise ModelInvalidFormatError("Model file is not GGUF (bad magic bytes).", path=model_path)


@dataclass(frozen=True)
class _PreparedPrompt:
    segments: tuple[tuple[str, Any], ...]  # ("tokens", list[int]) | ("embeddings", Tensor)
    n_tokens: int
    media_s: float | None


class ModelSession:
    """
    A loaded model plus its inference context.

    Example:
        >>> with ModelSession.load(ModelConfig("model.gguf")) as session:
        ...     print(session.generate("Hello", max_tokens=16).text)

    Thread Safety:
        Safe to call from several threads; conflicting operations fail with
        `ResourceBusyError`. A `TokenStream` holds the session until it is
        exhausted or closed.
    """

    def __init__(
        self,
        config: ModelConfig,
        *,
        backend: BaseBackend | str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._backend_spec = backend
        self._backend: BaseBackend | None = None
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        # Serializes dispose() against releases of `_lock`.
        self._guard = threading.Lock()
        self._dispose_pending = False
        self._handle: Any = None
        self._metadata: ModelMetadata | None = None
        self._compat: dict[str, Any] | None = None
        self._lora: AdapterRegistry | None = None
        self._media: MediaPipeline | None = None
        self._threads = config.threads
        self._threads_batch = config.effective_threads_batch
        self._rng = torch.Generator()
        self._kv_tokens: list[int] = []
        self._last_logits: torch.Tensor | None = None
        self._active_cancel: CancellationToken | None = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @classmethod
    def load(
        cls,
        config: ModelConfig,
        *,
        backend: BaseBackend | str | None = None,
        logger: logging.Logger | None = None,
    ) -> "ModelSession":
        session = cls(config, backend=backend, logger=logger)
        session.open()
        return session

    def open(self) -> None:
        """Validate the configuration and load the model through the backend."""
        if self._handle is not None:
            raise ModelAlreadyLoadedError("Session already has a loaded model.", path=self._config.model_path)

        config = self._config
        config.validate()
        check_model_file(config.model_path)
        if config.projector_path is not None and not os.path.exists(config.projector_path):
            raise VisionInitError(f"Projector not found: {config.projector_path}", path=config.projector_path)

        backend = self._resolve_backend()
        t0 = time.perf_counter()
        try:
            handle = backend.load_model(config)
        except LlamafuError:
            raise
        except Exception as exc:
            raise map_backend_error(exc, default=ErrorKind.MODEL_LOAD_FAILED, path=config.model_path) from exc

        try:
            metadata = backend.model_metadata(handle)
            if config.projector_path is not None and not metadata.multimodal:
                raise VisionInitError("Projector did not initialise.", path=config.projector_path)
        except BaseException as exc:
            self._free(backend, handle)
            if isinstance(exc, LlamafuError) or not isinstance(exc, Exception):
                raise
            raise map_backend_error(exc, default=ErrorKind.MODEL_LOAD_FAILED, path=config.model_path) from exc

        self._backend = backend
        self._handle = handle
        self._metadata = metadata
        self._compat = compute_compatibility(metadata, backend=backend.name)
        self._threads = config.threads
        self._threads_batch = config.effective_threads_batch
        self._rng = torch.Generator()
        if config.seed is not None:
            self._rng.manual_seed(config.seed)
        else:
            self._rng.seed()
        self._kv_tokens = []
        self._last_logits = None

        self._lora = AdapterRegistry(
            backend,
            handle=self._require_handle,
            metadata=metadata,
            composition=config.lora_composition,
            exclusive=self._exclusive,
            logger=self._logger,
        )
        self._media = MediaPipeline(
            backend,
            handle=self._require_handle,
            metadata=metadata,
            config=config.media,
            exclusive=self._exclusive,
            logger=self._logger,
        )

        self._logger.info(
            "Loaded %s (%s, vocab=%d, ctx=%d, threads=%d/%d, multimodal=%s) in %.2fs",
            config.model_path,
            metadata.architecture,
            metadata.vocab_size,
            config.context_size,
            self._threads,
            self._threads_batch,
            metadata.multimodal,
            time.perf_counter() - t0,
        )

    def dispose(self) -> None:
        """Release the native handle. Idempotent and never raises.

        If another thread is inside an operation (or a stream holds the
        session), the active generation is cancelled and the handle is freed
        by whoever releases the session, once the in-flight step returns.
        """
        with self._guard:
            if self._handle is None or self._backend is None:
                return
            if self._active_cancel is not None:
                self._active_cancel.cancel()
            if not self._lock.acquire(blocking=False):
                self._dispose_pending = True
                self._logger.info("Dispose requested while busy; freeing once the current operation returns")
                return
            try:
                self._teardown()
            finally:
                self._lock.release()

    def _teardown(self) -> None:
        # Caller holds both `_guard` and `_lock`.
        handle, backend = self._handle, self._backend
        self._dispose_pending = False
        if handle is None or backend is None:
            return
        if self._lora is not None:
            try:
                self._lora.detach_all(strict=False)
            except Exception as exc:  # pragma: no cover
                self._logger.warning("Failed to detach adapters on dispose: %s", exc)
        if self._media is not None:
            self._media.clear_vision_cache()

        self._handle = None
        self._metadata = None
        self._lora = None
        self._media = None
        self._kv_tokens = []
        self._last_logits = None
        self._free(backend, handle)
        self._logger.info("Disposed session for %s", self._config.model_path)

    def _free(self, backend: BaseBackend, handle: Any) -> None:
        try:
            backend.free_model(handle)
        except Exception as exc:
            self._logger.warning("Backend failed to free model: %s", exc)

    def __enter__(self) -> "ModelSession":
        if self._handle is None:
            self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    def _resolve_backend(self) -> BaseBackend:
        spec = self._backend_spec
        if isinstance(spec, BaseBackend):
            return spec
        from .registry import get_backend

        return get_backend(spec or self._config.backend)

    # -------------------------------------------------------------------------
    # Exclusive access
    # -------------------------------------------------------------------------

    def _require_handle(self) -> Any:
        if self._handle is None:
            raise InvalidParamError("Session is not open.", path=self._config.model_path)
        return self._handle

    def _acquire(self, operation: str) -> None:
        self._require_handle()
        if not self._lock.acquire(blocking=False):
            raise ResourceBusyError(
                f"Session is busy; cannot {operation} while another operation is in progress.",
                operation=operation,
            )
        if self._handle is None:
            # Disposed between the check above and taking the lock.
            self._lock.release()
            self._require_handle()

    def _release(self) -> None:
        with self._guard:
            try:
                if self._dispose_pending:
                    self._teardown()
            finally:
                self._lock.release()

    @contextmanager
    def _exclusive(self, operation: str) -> Iterator[None]:
        self._acquire(operation)
        try:
            yield
        finally:
            self._release()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def config(self) -> ModelConfig:
        return self._config

    @property
    def backend(self) -> BaseBackend | None:
        return self._backend

    @property
    def metadata(self) -> ModelMetadata:
        self._require_handle()
        assert self._metadata is not None
        return self._metadata

    @property
    def info(self) -> ModelInfo:
        handle = self._require_handle()
        assert self._metadata is not None and self._backend is not None and self._lora is not None
        md = self._metadata
        return ModelInfo(
            model_path=self._config.model_path,
            backend=self._backend.name,
            architecture=md.architecture,
            vocab_size=md.vocab_size,
            embedding_size=md.embedding_size,
            layer_count=md.layer_count,
            context_size=self._config.context_size,
            threads=self._threads,
            threads_batch=self._threads_batch,
            gpu_layers=self._config.gpu_layers,
            multimodal=md.multimodal,
            kv_cache_tokens=self._backend.kv_cache_token_count(handle),
            adapters=self._lora.list(),
            extra=dict(md.extra),
        )

    @property
    def lora(self) -> AdapterRegistry:
        self._require_handle()
        assert self._lora is not None
        return self._lora

    @property
    def media(self) -> MediaPipeline:
        self._require_handle()
        assert self._media is not None
        return self._media

    @property
    def kv_cache_token_count(self) -> int:
        handle = self._require_handle()
        return self._backend.kv_cache_token_count(handle)  # type: ignore[union-attr]

    @property
    def next_token_logits(self) -> torch.Tensor | None:
        """Logits for the position after the current KV cache contents."""
        return None if self._last_logits is None else self._last_logits.clone()

    # -------------------------------------------------------------------------
    # Tokens / embeddings
    # -------------------------------------------------------------------------

    def tokenize(self, text: str, *, add_special: bool = True) -> list[int]:
        handle = self._require_handle()
        try:
            return self._backend.tokenize(handle, text, add_special=add_special)  # type: ignore[union-attr]
        except LlamafuError:
            raise
        except Exception as exc:
            raise map_backend_error(exc, default=ErrorKind.INFERENCE_FAILED) from exc

    def detokenize(self, tokens: Sequence[int]) -> str:
        handle = self._require_handle()
        try:
            return self._backend.detokenize(handle, list(tokens))  # type: ignore[union-attr]
        except LlamafuError:
            raise
        except Exception as exc:
            raise map_backend_error(exc, default=ErrorKind.INFERENCE_FAILED) from exc

    def apply_chat_template(self, messages: Sequence[ChatMessage], add_assistant: bool = True) -> str:
        """Render `messages` with the chat template that ships with the model."""
        handle = self._require_handle()
        try:
            return self._backend.apply_chat_template(  # type: ignore[union-attr]
                handle, [m.to_dict() for m in messages], add_assistant
            )
        except LlamafuError:
            raise
        except Exception as exc:
            raise map_backend_error(exc, default=ErrorKind.INVALID_PARAM) from exc

    def embeddings(self, text: str) -> torch.Tensor:
        """Pooled embedding vector for `text` (does not touch the KV cache)."""
        tokens = self.tokenize(text)
        if not tokens:
            raise InvalidParamError("Text produced no tokens.")
        with self._exclusive("compute embeddings"):
            try:
                return self._backend.get_embeddings(self._handle, tokens)  # type: ignore[union-attr]
            except LlamafuError:
                raise
            except Exception as exc:
                raise map_backend_error(exc, default=ErrorKind.INFERENCE_FAILED) from exc

    # -------------------------------------------------------------------------
    # KV cache / threads
    # -------------------------------------------------------------------------

    def clear_kv_cache(self) -> None:
        with self._exclusive("clear the KV cache"):
            self._clear_kv()

    def defragment_kv_cache(self) -> None:
        with self._exclusive("defragment the KV cache"):
            try:
                self._backend.defragment_kv_cache(self._handle)  # type: ignore[union-attr]
            except LlamafuError:
                raise
            except Exception as exc:
                raise map_backend_error(exc, default=ErrorKind.INFERENCE_FAILED) from exc

    def set_thread_count(self, threads: int | None = None, threads_batch: int | None = None) -> None:
        """Change the thread counts used by subsequent evaluations."""
        new_threads = self._threads if threads is None else threads
        new_batch = self._threads_batch if threads_batch is None else threads_batch
        if new_threads <= 0 or new_batch <= 0:
            raise InvalidParamError("Thread counts must be > 0.", threads=new_threads, threads_batch=new_batch)
        with self._exclusive("change thread count"):
            try:
                self._backend.set_threads(self._handle, new_threads, new_batch)  # type: ignore[union-attr]
            except LlamafuError:
                raise
            except Exception as exc:
                raise map_backend_error(exc, default=ErrorKind.INVALID_PARAM) from exc
            self._threads, self._threads_batch = new_threads, new_batch
        self._logger.debug("Thread count -> %d/%d", new_threads, new_batch)

    def _clear_kv(self) -> None:
        self._backend.clear_kv_cache(self._handle)  # type: ignore[union-attr]
        self._kv_tokens = []
        self._last_logits = None

    def _clear_after_failure(self) -> None:
        try:
            self._clear_kv()
        except Exception as exc:
            self._logger.warning("Failed to clear KV cache after error: %s", exc)

    # -------------------------------------------------------------------------
    # State persistence
    # -------------------------------------------------------------------------

    def save_state(self, destination: str | os.PathLike) -> None:
        """Write the KV cache, RNG state and last logits to a state directory."""
        with self._exclusive("save state"):
            backend, handle = self._backend, self._handle
            assert backend is not None and self._compat is not None
            try:
                write_state(
                    destination,
                    compat=self._compat,
                    session={
                        "n_past": backend.kv_cache_token_count(handle),
                        "context_size": self._config.context_size,
                    },
                    write_engine_state=lambda p: backend.save_state(handle, str(p)),
                    sampler_payload={
                        "rng_state": self._rng.get_state(),
                        "last_logits": self._last_logits,
                        "kv_tokens": list(self._kv_tokens),
                    },
                )
            except LlamafuError:
                raise
            except Exception as exc:
                raise map_backend_error(exc, default=ErrorKind.STATE_SAVE_FAILED, path=os.fspath(destination)) from exc
        self._logger.info("Saved session state to %s", os.fspath(destination))

    def load_state(self, source: str | os.PathLike) -> None:
        """Restore a state directory written by `save_state`."""
        path = os.fspath(source)
        with self._exclusive("load state"):
            backend, handle = self._backend, self._handle
            assert backend is not None and self._compat is not None
            manifest = read_manifest(path)
            check_compatible(manifest, self._compat, path=path)
            n_past = int(manifest.session.get("n_past", 0))
            if n_past > self._config.context_size:
                raise ContextOverflowError(
                    "Saved state does not fit in this session's context.",
                    path=path,
                    n_past=n_past,
                    context_size=self._config.context_size,
                )
            try:
                sampler = load_sampler_payload(path, manifest)
                backend.load_state(handle, str(state_file(path, manifest, "engine", ENGINE_FILE)))
                restored = backend.kv_cache_token_count(handle)
                if restored != n_past:
                    raise StateLoadError(
                        "Restored KV cache size does not match saved state.",
                        path=path,
                        expected=n_past,
                        restored=restored,
                    )
            except BaseException as exc:
                self._clear_after_failure()
                if isinstance(exc, LlamafuError) or not isinstance(exc, Exception):
                    raise
                raise map_backend_error(exc, default=ErrorKind.STATE_LOAD_FAILED, path=path) from exc

            rng_state = sampler.get("rng_state")
            if isinstance(rng_state, torch.Tensor):
                self._rng.set_state(rng_state)
            logits = sampler.get("last_logits")
            self._last_logits = logits.clone() if isinstance(logits, torch.Tensor) else None
            self._kv_tokens = [int(t) for t in sampler.get("kv_tokens") or []]
        self._logger.info("Loaded session state from %s (%d tokens)", path, n_past)

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def generate(self, request: GenerationRequest | str | Sequence[int], **overrides: Any) -> GenerateResponse:
        """Run a generation to completion."""
        stream = self.generate_stream(request, **overrides)
        with stream:
            for _ in stream:
                pass
        return GenerateResponse(
            text=stream.text,
            usage=stream.usage,
            timing=stream.timing,
            finish_reason=stream.finish_reason or "stop",
        )

    async def agenerate(self, request: GenerationRequest | str | Sequence[int], **overrides: Any) -> GenerateResponse:
        """Async variant of `generate`; each step runs on a worker thread."""
        stream = self.generate_stream(request, **overrides)
        async for _ in stream:
            pass
        return GenerateResponse(
            text=stream.text,
            usage=stream.usage,
            timing=stream.timing,
            finish_reason=stream.finish_reason or "stop",
        )

    def generate_stream(self, request: GenerationRequest | str | Sequence[int], **overrides: Any) -> TokenStream:
        """Start a generation and return a lazy stream of text fragments.

        The session stays busy until the stream is exhausted or closed.
        """
        req = self._coerce_request(request, overrides)
        req.validate()
        self._require_handle()
        assert self._media is not None

        chain = req.sampler_chain if req.sampler_chain is not None else SamplerChain.from_config(req.sampling)
        chain.validate()

        t_media = time.perf_counter()
        decoded = [self._media.decode(m) for m in req.media]

        self._acquire("generate")
        cancel = CancellationToken()
        self._active_cancel = cancel
        try:
            chain.attach(continue_state=req.continue_sampler_state)
        except BaseException:
            self._active_cancel = None
            self._release()
            raise

        def release() -> None:
            chain.detach()
            self._active_cancel = None
            self._release()

        try:
            prepared = self._prepare_prompt(req, decoded, t_media)
        except BaseException as exc:
            release()
            if isinstance(exc, LlamafuError) or not isinstance(exc, Exception):
                raise
            raise map_backend_error(exc, default=ErrorKind.INFERENCE_FAILED) from exc

        state = GenerationState(prompt_tokens=prepared.n_tokens, media_s=prepared.media_s)
        source = self._generation_loop(req, prepared, chain, state, cancel)
        return TokenStream(source, state, release=release, cancel=cancel)

    def _coerce_request(self, request: GenerationRequest | str | Sequence[int], overrides: dict[str, Any]) -> GenerationRequest:
        if isinstance(request, GenerationRequest):
            if not overrides:
                return request
            base = request
        else:
            base = GenerationRequest(prompt=request)

        unknown = sorted(set(overrides) - _REQUEST_FIELDS - _SAMPLING_FIELDS)
        if unknown:
            raise InvalidParamError(f"Unknown generation option(s): {', '.join(unknown)}.")
        request_kw = {k: v for k, v in overrides.items() if k in _REQUEST_FIELDS}
        sampling_kw = {k: v for k, v in overrides.items() if k in _SAMPLING_FIELDS}
        sampling = request_kw.pop("sampling", base.sampling)
        if sampling_kw:
            sampling = sampling.merged(sampling_kw)
        return replace(base, sampling=sampling, **request_kw)

    def _prepare_prompt(
        self,
        req: GenerationRequest,
        decoded: list[DecodedMedia],
        t_media: float,
    ) -> _PreparedPrompt:
        assert self._backend is not None and self._metadata is not None and self._media is not None
        backend, handle = self._backend, self._handle
        segments: list[tuple[str, Any]] = []

        if req.is_tokenized:
            tokens = list(req.prompt)
            vocab = self._metadata.vocab_size
            bad = [t for t in tokens if t >= vocab]
            if bad:
                raise InvalidParamError(f"Token id {bad[0]} out of range (vocab={vocab}).", token=bad[0])
            segments.append(("tokens", tokens))
        else:
            text = str(req.prompt)
            parts = MEDIA_MARKER_RE.split(text)
            n_markers = len(parts) - 1
            if decoded and n_markers not in (0, len(decoded)):
                raise InvalidParamError(
                    f"Prompt has {n_markers} media marker(s) but {len(decoded)} media input(s).",
                )
            if not decoded and n_markers:
                # No media: markers are ordinary text.
                parts = [text]

            embeddings = [self._media.embed(d) for d in decoded]
            if decoded and n_markers == 0:
                # BOS, then every media embedding, then the text.
                lead = backend.tokenize(handle, "", add_special=req.add_special) if req.add_special else []
                if lead:
                    segments.append(("tokens", lead))
                segments.extend(("embeddings", e.embedding) for e in embeddings)
                body = backend.tokenize(handle, text, add_special=False) if text else []
                if body:
                    segments.append(("tokens", body))
            else:
                for i, part in enumerate(parts):
                    add_special = req.add_special and i == 0
                    if part or add_special:
                        toks = backend.tokenize(handle, part, add_special=add_special)
                        if toks:
                            segments.append(("tokens", toks))
                    if i < len(embeddings):
                        segments.append(("embeddings", embeddings[i].embedding))

        n_tokens = sum(len(d) if kind == "tokens" else int(d.shape[0]) for kind, d in segments)
        if n_tokens == 0:
            raise InvalidParamError("Prompt produced no tokens.")
        if n_tokens > self._config.context_size:
            raise ContextOverflowError(
                f"Prompt needs {n_tokens} positions but the context holds {self._config.context_size}.",
                prompt_tokens=n_tokens,
                context_size=self._config.context_size,
            )
        media_s = time.perf_counter() - t_media if decoded else None
        return _PreparedPrompt(segments=tuple(segments), n_tokens=n_tokens, media_s=media_s)

    def _should_stop(self, req: GenerationRequest, cancel: CancellationToken) -> bool:
        if cancel.is_cancelled or self._handle is None:
            return True
        return req.cancel is not None and req.cancel.is_cancelled

    def _generation_loop(
        self,
        req: GenerationRequest,
        prepared: _PreparedPrompt,
        chain: SamplerChain,
        state: GenerationState,
        cancel: CancellationToken,
    ) -> Iterator[str]:
        backend, handle = self._backend, self._handle
        assert backend is not None
        sampling = req.sampling
        grammar: GrammarConstraint | None = req.grammar
        context_size = self._config.context_size

        if sampling.seed is None:
            generator = self._rng
        else:
            generator = torch.Generator()
            generator.manual_seed(sampling.seed)

        detok = IncrementalDetokenizer(lambda toks: backend.detokenize(handle, toks))
        stops = StopSequenceFilter(sampling.stop)
        recent: list[int] = []
        generated: list[int] = []
        reason: FinishReason = "stop"

        try:
            t_prefill = time.perf_counter()
            self._clear_kv()
            logits: torch.Tensor | None = None
            for kind, data in prepared.segments:
                if kind == "tokens":
                    logits = backend.evaluate(handle, data)
                    self._kv_tokens.extend(data)
                    recent.extend(data)
                else:
                    logits = backend.evaluate_embeddings(handle, data)
            assert logits is not None
            self._last_logits = logits
            state.prefill_s = time.perf_counter() - t_prefill
            self._logger.debug("Prefilled %d positions in %.3fs", prepared.n_tokens, state.prefill_s)

            t_decode = time.perf_counter()
            while True:
                if self._should_stop(req, cancel):
                    reason = "cancelled"
                    break
                if state.completion_tokens >= sampling.max_tokens:
                    reason = "length"
                    break

                step_logits = logits
                if grammar is not None:
                    step_logits = backend.constrain_logits(handle, grammar, logits, generated)
                token = chain.apply(step_logits, history=recent, generator=generator)

                if backend.is_end_of_generation(handle, token):
                    reason = "stop"
                    break

                state.completion_tokens += 1
                generated.append(token)
                recent.append(token)

                text = stops.feed(detok.push(token))
                if text:
                    state.pieces.append(text)
                    yield text
                if stops.stopped:
                    reason = "stop"
                    break
                if state.completion_tokens >= sampling.max_tokens:
                    reason = "length"
                    break
                if backend.kv_cache_token_count(handle) >= context_size:
                    reason = "length"
                    break
                if self._should_stop(req, cancel):
                    reason = "cancelled"
                    break

                logits = backend.evaluate(handle, [token])
                self._kv_tokens.append(token)
                self._last_logits = logits
            state.decode_s = time.perf_counter() - t_decode

            if not stops.stopped:
                tail = stops.feed(detok.flush()) + stops.finish()
                if tail:
                    state.pieces.append(tail)
                    yield tail
        except GeneratorExit:
            reason = "cancelled"
            raise
        except LlamafuError:
            reason = "error"
            self._clear_after_failure()
            raise
        except Exception as exc:
            reason = "error"
            self._clear_after_failure()
            raise map_backend_error(exc, default=ErrorKind.INFERENCE_FAILED) from exc
        finally:
            state.finish_reason = reason
            state.finished_at = time.perf_counter()
            if state.decode_s is None and state.prefill_s is not None:
                state.decode_s = state.finished_at - state.started_at - state.prefill_s

        self._logger.debug(
            "Generated %d tokens (finish=%s)", state.completion_tokens, reason
        )
        if reason == "cancelled" and req.raise_on_cancel:
            raise GenerationAbortedError(
                "Generation cancelled.",
                partial_text=state.text,
                completion_tokens=state.completion_tokens,
            )
