"""LoRA adapter registry.

Tracks adapters attached to a session's model, assigns ids (monotonic, never
reused for the session's lifetime), and applies a composition policy that
turns user scales into the effective scales pushed to the backend.
"""

from __future__ import annotations

import enum
import itertools
import logging
import math
import os
from contextlib import AbstractContextManager, nullcontext
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping

from .errors import (
    ErrorKind,
    InvalidParamError,
    LlamafuError,
    LoraFileNotFoundError,
    LoraIncompatibleError,
    LoraNotFoundError,
    map_backend_error,
)
from .types import AdapterInfo

if TYPE_CHECKING:
    from .backends.base import BaseBackend, ModelMetadata

logger = logging.getLogger(__name__)


class LoraComposition(str, enum.Enum):
    """How multiple attached adapters combine.

    - ADDITIVE: each adapter applies at its own scale.
    - WEIGHTED: scales are normalized so their absolute values sum to 1.
    - LAST_WINS: only the most recently loaded adapter is active.
    """

    ADDITIVE = "additive"
    WEIGHTED = "weighted"
    LAST_WINS = "last_wins"


@dataclass
class LoraAdapter:
    adapter_id: int
    path: str
    scale: float
    compatibility_tag: str | None
    name: str
    native: Any = None
    effective_scale: float = 0.0

    def info(self) -> AdapterInfo:
        return AdapterInfo(
            adapter_id=self.adapter_id,
            path=self.path,
            name=self.name,
            scale=self.scale,
            effective_scale=self.effective_scale,
            compatibility_tag=self.compatibility_tag,
        )


def effective_scales(scales: list[float], composition: LoraComposition) -> list[float]:
    """Effective scales for adapters listed in load order."""
    if not scales:
        return []
    if composition is LoraComposition.ADDITIVE:
        return list(scales)
    if composition is LoraComposition.WEIGHTED:
        total = sum(abs(s) for s in scales)
        if total == 0:
            return [0.0 for _ in scales]
        return [s / total for s in scales]
    return [0.0] * (len(scales) - 1) + [scales[-1]]


def _check_scale(scale: float) -> float:
    try:
        value = float(scale)
    except (TypeError, ValueError):
        raise InvalidParamError(f"LoRA scale must be a number, got {scale!r}.") from None
    if not math.isfinite(value):
        raise InvalidParamError("LoRA scale must be finite.", scale=scale)
    return value


class AdapterRegistry:
    """Adapters attached to one session."""

    def __init__(
        self,
        backend: "BaseBackend",
        *,
        handle: Callable[[], Any],
        metadata: "ModelMetadata",
        composition: LoraComposition | str = LoraComposition.ADDITIVE,
        exclusive: Callable[[str], AbstractContextManager] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._backend = backend
        self._handle = handle
        self._metadata = metadata
        self._composition = LoraComposition(composition)
        self._exclusive = exclusive or (lambda _op: nullcontext())
        self._logger = logger or logging.getLogger(__name__)
        self._adapters: dict[int, LoraAdapter] = {}
        self._ids = itertools.count(1)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def composition(self) -> LoraComposition:
        return self._composition

    def list(self) -> tuple[AdapterInfo, ...]:
        return tuple(a.info() for a in self._adapters.values())

    def get(self, adapter_id: int) -> AdapterInfo:
        return self._require(adapter_id).info()

    def find_by_name(self, name: str) -> AdapterInfo | None:
        for adapter in self._adapters.values():
            if adapter.name == name:
                return adapter.info()
        return None

    def find_by_path(self, path: str | os.PathLike) -> AdapterInfo | None:
        target = os.path.abspath(os.fspath(path))
        for adapter in self._adapters.values():
            if adapter.path == target:
                return adapter.info()
        return None

    def is_compatible(self, path: str | os.PathLike) -> bool:
        path = os.fspath(path)
        if not os.path.exists(path):
            return False
        return self._backend.check_lora_compatibility(self._handle(), path) is None

    def __len__(self) -> int:
        return len(self._adapters)

    def __contains__(self, adapter_id: int) -> bool:
        return adapter_id in self._adapters

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def load(self, path: str | os.PathLike, scale: float = 1.0, *, name: str | None = None) -> int:
        """Attach the adapter at `path` and return its id."""
        scale = _check_scale(scale)
        path = os.path.abspath(os.fspath(path))
        if not os.path.exists(path):
            raise LoraFileNotFoundError(f"LoRA adapter not found: {path}", path=path)

        reason = self._backend.check_lora_compatibility(self._handle(), path)
        if reason is not None:
            raise LoraIncompatibleError(
                f"LoRA adapter is not compatible with {self._metadata.architecture}: {reason}",
                path=path,
            )

        with self._exclusive("lora"):
            scales = [a.scale for a in self._adapters.values()] + [scale]
            initial = effective_scales(scales, self._composition)[-1]
            try:
                native = self._backend.attach_lora(self._handle(), path, initial)
            except LlamafuError:
                raise
            except Exception as exc:
                raise map_backend_error(exc, default=ErrorKind.LORA_LOAD_FAILED, path=path) from exc

            adapter_id = next(self._ids)
            self._adapters[adapter_id] = LoraAdapter(
                adapter_id=adapter_id,
                path=path,
                scale=scale,
                compatibility_tag=self._metadata.architecture,
                name=name or os.path.splitext(os.path.basename(path))[0],
                native=native,
                effective_scale=initial,
            )
            self._apply_composition()

        self._logger.info("Loaded LoRA adapter %d from %s (scale=%.3f)", adapter_id, path, scale)
        return adapter_id

    def load_many(
        self,
        adapters: Iterable[str | os.PathLike | tuple[str, float] | Mapping[str, Any]],
    ) -> list[int]:
        """Load several adapters; on failure, adapters loaded by this call are unloaded."""
        loaded: list[int] = []
        try:
            for spec in adapters:
                if isinstance(spec, Mapping):
                    loaded.append(self.load(spec["path"], spec.get("scale", 1.0), name=spec.get("name")))
                elif isinstance(spec, tuple):
                    loaded.append(self.load(spec[0], spec[1]))
                else:
                    loaded.append(self.load(spec))
        except LlamafuError:
            for adapter_id in reversed(loaded):
                self.unload(adapter_id)
            raise
        return loaded

    def unload(self, adapter_id: int) -> None:
        adapter = self._require(adapter_id)
        with self._exclusive("lora"):
            try:
                self._backend.detach_lora(self._handle(), adapter.native)
            except LlamafuError:
                raise
            except Exception as exc:
                raise map_backend_error(exc, default=ErrorKind.LORA_NOT_FOUND, adapter_id=adapter_id) from exc
            del self._adapters[adapter_id]
            self._apply_composition()
        self._logger.info("Unloaded LoRA adapter %d", adapter_id)

    def set_scale(self, adapter_id: int, scale: float) -> None:
        adapter = self._require(adapter_id)
        scale = _check_scale(scale)
        with self._exclusive("lora"):
            adapter.scale = scale
            self._apply_composition()
        self._logger.debug("LoRA adapter %d scale -> %.3f", adapter_id, scale)

    def set_composition(self, composition: LoraComposition | str) -> None:
        try:
            composition = LoraComposition(composition)
        except ValueError:
            raise InvalidParamError(f"Unknown LoRA composition: {composition!r}.") from None
        with self._exclusive("lora"):
            self._composition = composition
            self._apply_composition()

    def clear(self) -> None:
        with self._exclusive("lora"):
            try:
                self.detach_all()
            finally:
                if self._adapters:
                    self._apply_composition()
        self._logger.info("Cleared all LoRA adapters")

    def detach_all(self, *, strict: bool = True) -> None:
        """Detach every adapter; with `strict=False` failures are only logged (used on dispose).

        An adapter leaves the registry only once the backend has detached it,
        unless `strict` is False.
        """
        for adapter_id in list(self._adapters):
            adapter = self._adapters[adapter_id]
            try:
                self._backend.detach_lora(self._handle(), adapter.native)
            except Exception as exc:
                if strict:
                    raise map_backend_error(exc, default=ErrorKind.LORA_NOT_FOUND, adapter_id=adapter_id) from exc
                self._logger.warning("Failed to detach LoRA adapter %d: %s", adapter_id, exc)
            del self._adapters[adapter_id]

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _require(self, adapter_id: int) -> LoraAdapter:
        adapter = self._adapters.get(adapter_id)
        if adapter is None:
            raise LoraNotFoundError(f"No LoRA adapter with id {adapter_id}.", adapter_id=adapter_id)
        return adapter

    def _apply_composition(self) -> None:
        adapters = list(self._adapters.values())
        scales = effective_scales([a.scale for a in adapters], self._composition)
        for adapter, effective in zip(adapters, scales):
            if adapter.effective_scale == effective:
                continue
            try:
                self._backend.set_lora_scale(self._handle(), adapter.native, effective)
            except LlamafuError:
                raise
            except Exception as exc:
                raise map_backend_error(
                    exc, default=ErrorKind.LORA_LOAD_FAILED, adapter_id=adapter.adapter_id
                ) from exc
            adapter.effective_scale = effective
