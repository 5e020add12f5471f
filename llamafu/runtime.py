"""Runtime environment checks and opt-in logging setup for llamafu."""

from __future__ import annotations

import functools
import logging
import os

import torch


@functools.lru_cache(maxsize=1)
def is_cuda_available() -> bool:
    """Check if CUDA is available."""
    return torch.cuda.is_available()


@functools.lru_cache(maxsize=16)
def get_cuda_capability(device_index: int = 0) -> tuple[int, int] | None:
    """Get CUDA compute capability for a device."""
    if not is_cuda_available() or device_index >= torch.cuda.device_count():
        return None
    props = torch.cuda.get_device_properties(device_index)
    return (props.major, props.minor)


def default_thread_count() -> int:
    """Default inference thread count.

    `LLAMAFU_THREADS` wins when set; otherwise half the visible CPUs
    (at least 1, at most 8), which is what mobile-class devices handle well.
    """
    raw = os.environ.get("LLAMAFU_THREADS")
    if raw:
        try:
            value = int(raw)
        except ValueError:
            value = 0
        if value > 0:
            return value
    cpus = os.cpu_count() or 2
    return max(1, min(8, cpus // 2))


def select_device(gpu_layers: int) -> str:
    """Pick the torch device for a model given its GPU layer request."""
    if gpu_layers != 0 and is_cuda_available():
        return "cuda"
    return "cpu"


def configure_logging(level: int | str | None = None, *, fmt: str | None = None) -> logging.Logger:
    """Attach a stream handler to the `llamafu` logger.

    Opt-in convenience only; sessions log through whatever logger they are
    given (or their module logger) regardless of this call.
    """
    if level is None:
        level = os.environ.get("LLAMAFU_LOG_LEVEL", "WARNING")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.WARNING

    root = logging.getLogger("llamafu")
    root.setLevel(level)
    if not any(getattr(h, "_llamafu_default", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt or "%(asctime)s %(levelname)s %(name)s: %(message)s"))
        handler._llamafu_default = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    return root
