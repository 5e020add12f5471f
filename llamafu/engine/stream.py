"""Streaming primitives: cancellation, incremental text handling and the token stream cursor."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Sequence

from .types import FinishReason, Timing, Usage

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag, polled once per generation step."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._deadline: float | None = None
        self._clock: Callable[[], float] = time.monotonic

    @classmethod
    def with_deadline(cls, seconds: float, *, clock: Callable[[], float] = time.monotonic) -> "CancellationToken":
        """A token that reports cancelled once `seconds` have elapsed on `clock`."""
        token = cls()
        token._clock = clock
        token._deadline = clock() + float(seconds)
        return token

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and self._clock() >= self._deadline:
            self._event.set()
            return True
        return False


class IncrementalDetokenizer:
    """Turn a growing token sequence into text deltas.

    Decodes a small window (prefix + new tokens) and emits only the part past
    the prefix. Output ending in U+FFFD is held back until the multi-byte
    character is complete.
    """

    def __init__(self, detokenize: Callable[[Sequence[int]], str]) -> None:
        self._detokenize = detokenize
        self._tokens: list[int] = []
        self._prefix_offset = 0
        self._read_offset = 0

    @property
    def tokens(self) -> list[int]:
        return self._tokens

    def push(self, token: int) -> str:
        self._tokens.append(int(token))
        prefix_text = self._detokenize(self._tokens[self._prefix_offset : self._read_offset])
        new_text = self._detokenize(self._tokens[self._prefix_offset :])
        if len(new_text) > len(prefix_text) and not new_text.endswith("\ufffd"):
            delta = new_text[len(prefix_text) :]
            self._prefix_offset = self._read_offset
            self._read_offset = len(self._tokens)
            return delta
        return ""

    def flush(self) -> str:
        """Emit whatever is still pending (possibly an incomplete character)."""
        if self._read_offset >= len(self._tokens):
            return ""
        prefix_text = self._detokenize(self._tokens[self._prefix_offset : self._read_offset])
        new_text = self._detokenize(self._tokens[self._prefix_offset :])
        self._prefix_offset = self._read_offset = len(self._tokens)
        if len(new_text) > len(prefix_text):
            return new_text[len(prefix_text) :].rstrip("\ufffd")
        return ""


class StopSequenceFilter:
    """Apply string stop sequences to streamed text.

    Only generated text is ever fed in, so a stop sequence can never match
    inside the prompt. Text that could be the start of a stop sequence is held
    back; the matched sequence itself is never emitted.
    """

    def __init__(self, stop_sequences: Sequence[str]) -> None:
        self._stop_sequences = [s for s in stop_sequences if s]
        self._tail_keep = max((len(s) for s in self._stop_sequences), default=1) - 1
        self._buffer = ""
        self.stopped = False
        self.matched: str | None = None

    def feed(self, text: str) -> str:
        if not text or self.stopped:
            return ""
        self._buffer += text

        idx, matched = self._find_earliest_stop(self._buffer)
        if idx is not None:
            before = self._buffer[:idx]
            self._buffer = ""
            self.stopped = True
            self.matched = matched
            return before

        if len(self._buffer) <= self._tail_keep:
            return ""
        safe_end = len(self._buffer) - self._tail_keep
        safe = self._buffer[:safe_end]
        self._buffer = self._buffer[safe_end:]
        return safe

    def finish(self) -> str:
        """Flush the held-back tail at end-of-generation."""
        if self.stopped:
            return ""
        remaining = self._buffer
        self._buffer = ""
        return remaining

    def _find_earliest_stop(self, text: str) -> tuple[int | None, str | None]:
        earliest: int | None = None
        matched: str | None = None
        for s in self._stop_sequences:
            idx = text.find(s)
            if idx == -1:
                continue
            if earliest is None or idx < earliest:
                earliest = idx
                matched = s
        return earliest, matched


@dataclass
class GenerationState:
    """Mutable bookkeeping for one generation, filled in by the generation loop."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    finish_reason: FinishReason | None = None
    pieces: list[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.perf_counter)
    prefill_s: float | None = None
    decode_s: float | None = None
    media_s: float | None = None
    finished_at: float | None = None

    @property
    def text(self) -> str:
        return "".join(self.pieces)

    def usage(self) -> Usage:
        return Usage(prompt_tokens=self.prompt_tokens, completion_tokens=self.completion_tokens)

    def timing(self) -> Timing:
        total = None
        if self.finished_at is not None:
            total = self.finished_at - self.started_at
        tok_per_s = None
        if self.decode_s and self.decode_s > 0 and self.completion_tokens:
            tok_per_s = self.completion_tokens / self.decode_s
        return Timing(
            prefill_s=self.prefill_s,
            decode_s=self.decode_s,
            total_s=total,
            tok_per_s=tok_per_s,
            media_s=self.media_s,
        )


_END = object()


class TokenStream:
    """Pull-based cursor over generated text fragments.

    Lazy, finite and non-restartable. Nothing is generated until the consumer
    pulls (`next()`, `has_next()`, iteration). The session lock handed in via
    `release` is held until the stream is exhausted or closed, so a stream
    that is neither drained nor closed keeps the session busy.
    """

    def __init__(
        self,
        source: Iterator[str],
        state: GenerationState,
        *,
        release: Callable[[], None] | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        self._source = source
        self._done_callbacks: list[Callable[[GenerationState], None]] = []
        self._state = state
        self._release = release
        self._cancel = cancel if cancel is not None else CancellationToken()
        self._peeked: Any = None
        self._done = False
        self._closed = False
        self._pull_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Sync cursor
    # -------------------------------------------------------------------------

    def has_next(self) -> bool:
        if self._peeked is None:
            self._peeked = self._pull()
        return self._peeked is not _END

    def next(self) -> str:
        if self._peeked is not None:
            item, self._peeked = self._peeked, None
        else:
            item = self._pull()
        if item is _END:
            raise StopIteration
        return item

    __next__ = next

    def __iter__(self) -> "TokenStream":
        return self

    def _pull(self) -> Any:
        if self._done:
            return _END
        with self._pull_lock:
            if self._done:
                return _END
            try:
                return next(self._source)
            except StopIteration:
                self._finish()
                return _END
            except BaseException:
                self._finish()
                raise

    def add_done_callback(self, callback: Callable[[GenerationState], None]) -> None:
        """Call `callback(state)` once the stream finishes (immediately if it already has)."""
        if self._done:
            callback(self._state)
        else:
            self._done_callbacks.append(callback)

    def cancel(self) -> None:
        """Request cooperative cancellation; the stream ends at the next step."""
        self._cancel.cancel()

    def close(self) -> None:
        """Stop generating and release the session. Idempotent."""
        if self._closed:
            return
        if not self._done:
            self._cancel.cancel()
            with self._pull_lock:
                try:
                    self._source.close()
                finally:
                    self._finish()
        self._closed = True

    def _finish(self) -> None:
        if self._done:
            return
        self._done = True
        if self._state.finish_reason is None:
            self._state.finish_reason = "cancelled"
        if self._state.finished_at is None:
            self._state.finished_at = time.perf_counter()
        release, self._release = self._release, None
        if release is not None:
            release()
        callbacks, self._done_callbacks = self._done_callbacks, []
        for callback in callbacks:
            callback(self._state)

    def __enter__(self) -> "TokenStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __del__(self) -> None:
        try:
            self.close()
        except Exception:  # pragma: no cover
            pass

    # -------------------------------------------------------------------------
    # Async iteration
    # -------------------------------------------------------------------------

    def __aiter__(self) -> "TokenStream":
        return self

    async def __anext__(self) -> str:
        loop = asyncio.get_running_loop()
        fut = loop.run_in_executor(None, self._pull_or_end)
        try:
            item = await fut
        except asyncio.CancelledError:
            # The worker thread may still be inside a step; stop it cooperatively
            # and close once that step returns.
            self._cancel.cancel()
            fut.add_done_callback(lambda _f: self.close())
            raise
        if item is _END:
            raise StopAsyncIteration
        return item

    def _pull_or_end(self) -> Any:
        if self._peeked is not None:
            item, self._peeked = self._peeked, None
            return item
        return self._pull()

    # -------------------------------------------------------------------------
    # Results
    # -------------------------------------------------------------------------

    @property
    def cancellation(self) -> CancellationToken:
        return self._cancel

    @property
    def done(self) -> bool:
        return self._done

    @property
    def text(self) -> str:
        """Text emitted so far."""
        return self._state.text

    @property
    def finish_reason(self) -> FinishReason | None:
        return self._state.finish_reason if self._done else None

    @property
    def usage(self) -> Usage:
        return self._state.usage()

    @property
    def timing(self) -> Timing:
        return self._state.timing()
