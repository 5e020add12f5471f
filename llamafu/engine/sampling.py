"""Sampler chain: an ordered pipeline of token-selection stages.

Stages are a closed set of frozen dataclasses (`Sampler` is their union).
Applying a chain runs every stage, in declaration order, over a float32 logits
vector in which pruned candidates are set to -inf:

- `Temperature` rescales
- `TopK`, `TopP`, `MinP`, `Typical` prune
- `Penalty` re-weights tokens seen in the recent history
- `Greedy`, `MirostatV1`, `MirostatV2` select the final token (terminal)

A terminal stage may only appear last. A chain without a terminal stage ends
with a seeded multinomial draw from whatever distribution survives.
"""

from __future__ import annotations

import logging
import math
import threading
from collections import Counter
from dataclasses import dataclass
from typing import Iterator, Sequence

import torch

from .errors import InvalidParamError, ResourceBusyError
from .types import SamplingConfig

logger = logging.getLogger(__name__)


# =============================================================================
# Stage variants
# =============================================================================


@dataclass(frozen=True)
class Greedy:
    """Select the most likely token."""

    def validate(self) -> None:
        pass


@dataclass(frozen=True)
class Temperature:
    """Divide logits by `value`. `value <= 0` keeps only the argmax."""

    value: float

    def validate(self) -> None:
        if math.isnan(self.value):
            raise InvalidParamError("Temperature must be a number.")


@dataclass(frozen=True)
class TopK:
    """Keep the `k` highest logits. `k <= 0` disables the stage."""

    k: int

    def validate(self) -> None:
        if not isinstance(self.k, int) or isinstance(self.k, bool):
            raise InvalidParamError("top-k 'k' must be an integer.", k=self.k)


@dataclass(frozen=True)
class TopP:
    """Nucleus sampling: keep the smallest set whose mass reaches `p`."""

    p: float
    min_keep: int = 1

    def validate(self) -> None:
        if not 0.0 < self.p <= 1.0:
            raise InvalidParamError("top-p 'p' must be in (0, 1].", p=self.p)
        _check_min_keep(self.min_keep)


@dataclass(frozen=True)
class MinP:
    """Keep tokens whose probability is at least `p` times the top probability."""

    p: float
    min_keep: int = 1

    def validate(self) -> None:
        if not 0.0 <= self.p <= 1.0:
            raise InvalidParamError("min-p 'p' must be in [0, 1].", p=self.p)
        _check_min_keep(self.min_keep)


@dataclass(frozen=True)
class Typical:
    """Locally typical sampling with mass `p`."""

    p: float
    min_keep: int = 1

    def validate(self) -> None:
        if not 0.0 < self.p <= 1.0:
            raise InvalidParamError("typical 'p' must be in (0, 1].", p=self.p)
        _check_min_keep(self.min_keep)


@dataclass(frozen=True)
class Penalty:
    """Repetition / frequency / presence penalties over the last `last_n` tokens."""

    repeat: float = 1.1
    frequency: float = 0.0
    presence: float = 0.0
    last_n: int = 64

    def validate(self) -> None:
        if self.repeat <= 0:
            raise InvalidParamError("penalty 'repeat' must be > 0.", repeat=self.repeat)
        if self.last_n < 0:
            raise InvalidParamError("penalty 'last_n' must be >= 0.", last_n=self.last_n)


@dataclass(frozen=True)
class MirostatV1:
    """Mirostat 1.0: adaptive top-k driven by a target surprise `tau`."""

    tau: float = 5.0
    eta: float = 0.1
    m: int = 100

    def validate(self) -> None:
        if self.tau <= 0 or self.eta <= 0:
            raise InvalidParamError("mirostat 'tau' and 'eta' must be > 0.")
        if self.m < 2:
            raise InvalidParamError("mirostat 'm' must be >= 2.", m=self.m)


@dataclass(frozen=True)
class MirostatV2:
    """Mirostat 2.0: truncate tokens whose surprise exceeds the running `mu`."""

    tau: float = 5.0
    eta: float = 0.1

    def validate(self) -> None:
        if self.tau <= 0 or self.eta <= 0:
            raise InvalidParamError("mirostat 'tau' and 'eta' must be > 0.")


Sampler = Greedy | Temperature | TopK | TopP | MinP | Typical | Penalty | MirostatV1 | MirostatV2

_SAMPLER_TYPES = (Greedy, Temperature, TopK, TopP, MinP, Typical, Penalty, MirostatV1, MirostatV2)
_TERMINAL_TYPES = (Greedy, MirostatV1, MirostatV2)


def _check_min_keep(min_keep: int) -> None:
    if min_keep < 1:
        raise InvalidParamError("'min_keep' must be >= 1.", min_keep=min_keep)


def is_terminal(stage: Sampler) -> bool:
    return isinstance(stage, _TERMINAL_TYPES)


# =============================================================================
# Stage implementations
# =============================================================================


def _num_candidates(logits: torch.Tensor) -> int:
    return int(torch.isfinite(logits).sum().item())


def _keep_only(logits: torch.Tensor, keep: torch.Tensor) -> torch.Tensor:
    """Return logits with every index not in `keep` set to -inf."""
    out = torch.full_like(logits, float("-inf"))
    out[keep] = logits[keep]
    return out


def _softmax(logits: torch.Tensor) -> torch.Tensor:
    probs = torch.softmax(logits, dim=-1)
    return torch.nan_to_num(probs, nan=0.0, posinf=0.0, neginf=0.0)


def _apply_temperature(stage: Temperature, logits: torch.Tensor) -> torch.Tensor:
    if stage.value <= 0:
        return _keep_only(logits, torch.argmax(logits).view(1))
    return logits / float(stage.value)


def _apply_top_k(stage: TopK, logits: torch.Tensor) -> torch.Tensor:
    n = _num_candidates(logits)
    if stage.k <= 0 or stage.k >= n:
        return logits
    _, idx = torch.topk(logits, stage.k)
    return _keep_only(logits, idx)


def _apply_top_p(stage: TopP, logits: torch.Tensor) -> torch.Tensor:
    if stage.p >= 1.0:
        return logits
    probs = _softmax(logits)
    sorted_probs, sorted_idx = torch.sort(probs, descending=True)
    cum = torch.cumsum(sorted_probs, dim=-1)
    # First position where the cumulative mass reaches p, inclusive.
    cutoff = int(torch.searchsorted(cum, torch.tensor([stage.p], dtype=cum.dtype)).item()) + 1
    cutoff = max(cutoff, stage.min_keep)
    cutoff = min(cutoff, _num_candidates(logits)) or 1
    return _keep_only(logits, sorted_idx[:cutoff])


def _apply_min_p(stage: MinP, logits: torch.Tensor) -> torch.Tensor:
    if stage.p <= 0.0:
        return logits
    probs = _softmax(logits)
    threshold = float(probs.max().item()) * stage.p
    keep = torch.nonzero(probs >= threshold, as_tuple=False).view(-1)
    if keep.numel() < stage.min_keep:
        _, keep = torch.topk(probs, min(stage.min_keep, probs.numel()))
    return _keep_only(logits, keep)


def _apply_typical(stage: Typical, logits: torch.Tensor) -> torch.Tensor:
    if stage.p >= 1.0:
        return logits
    probs = _softmax(logits)
    log_probs = torch.log_softmax(logits, dim=-1)
    entropy = -torch.nansum(probs * log_probs)
    shifted = torch.abs(-log_probs - entropy)
    shifted = torch.where(torch.isfinite(shifted), shifted, torch.full_like(shifted, float("inf")))
    order = torch.argsort(shifted)
    cum = torch.cumsum(probs[order], dim=-1)
    cutoff = int(torch.searchsorted(cum, torch.tensor([stage.p], dtype=cum.dtype)).item()) + 1
    cutoff = max(cutoff, stage.min_keep)
    cutoff = min(cutoff, _num_candidates(logits)) or 1
    return _keep_only(logits, order[:cutoff])


def _apply_penalty(stage: Penalty, logits: torch.Tensor, history: Sequence[int]) -> torch.Tensor:
    if stage.last_n == 0 or not history:
        return logits
    if stage.repeat == 1.0 and stage.frequency == 0.0 and stage.presence == 0.0:
        return logits

    recent = [t for t in history[-stage.last_n :] if 0 <= t < logits.numel()]
    if not recent:
        return logits
    counts = Counter(recent)
    idx = torch.tensor(list(counts.keys()), dtype=torch.long)
    cnt = torch.tensor(list(counts.values()), dtype=logits.dtype)

    out = logits.clone()
    vals = out[idx]
    if stage.repeat != 1.0:
        vals = torch.where(vals > 0, vals / stage.repeat, vals * stage.repeat)
    vals = vals - cnt * stage.frequency - (cnt > 0).to(logits.dtype) * stage.presence
    out[idx] = vals
    return out


def _draw(logits: torch.Tensor, generator: torch.Generator | None) -> int:
    """Multinomial draw with numerical sanitation; falls back to argmax."""
    probs = torch.softmax(logits.float(), dim=-1)
    if torch.isnan(probs).any() or torch.isinf(probs).any() or (probs < 0).any():
        probs = torch.nan_to_num(probs, nan=0.0, posinf=0.0, neginf=0.0)
        probs = torch.clamp(probs, min=0.0)
    z = float(probs.sum().item())
    if z <= 0:
        return int(torch.argmax(torch.nan_to_num(logits, nan=float("-inf"))).item())
    return int(torch.multinomial(probs / z, 1, generator=generator).item())


def _select_mirostat_v1(
    stage: MirostatV1,
    logits: torch.Tensor,
    mu: float,
    generator: torch.Generator | None,
) -> tuple[int, float]:
    n_vocab = logits.numel()
    probs = _softmax(logits)
    sorted_probs, sorted_idx = torch.sort(probs, descending=True)
    m = min(stage.m, _num_candidates(logits))

    # Estimate the Zipf exponent from the top-m probabilities.
    sum_ti_bi = 0.0
    sum_ti_sq = 0.0
    for i in range(m - 1):
        p_i = float(sorted_probs[i].item())
        p_next = float(sorted_probs[i + 1].item())
        if p_i <= 0 or p_next <= 0:
            break
        t_i = math.log((i + 2) / (i + 1))
        b_i = math.log(p_i / p_next)
        sum_ti_bi += t_i * b_i
        sum_ti_sq += t_i * t_i

    k = 1
    if sum_ti_sq > 0:
        s_hat = sum_ti_bi / sum_ti_sq
        epsilon_hat = s_hat - 1.0
        if s_hat > 0 and epsilon_hat != 0:
            try:
                k_f = ((epsilon_hat * (2.0**mu)) / (1.0 - n_vocab ** (-epsilon_hat))) ** (1.0 / s_hat)
                k = int(max(1.0, min(k_f, float(n_vocab))))
            except (OverflowError, ZeroDivisionError, ValueError):
                k = n_vocab
    truncated = _keep_only(logits, sorted_idx[:k])
    token = _draw(truncated, generator)

    p_token = float(_softmax(truncated)[token].item())
    surprise = -math.log2(p_token) if p_token > 0 else float(stage.tau)
    return token, mu - stage.eta * (surprise - stage.tau)


def _select_mirostat_v2(
    stage: MirostatV2,
    logits: torch.Tensor,
    mu: float,
    generator: torch.Generator | None,
) -> tuple[int, float]:
    probs = _softmax(logits)
    sorted_probs, sorted_idx = torch.sort(probs, descending=True)
    surprise = -torch.log2(sorted_probs)
    keep = int((surprise <= mu).sum().item())
    keep = max(keep, 1)
    truncated = _keep_only(logits, sorted_idx[:keep])
    token = _draw(truncated, generator)

    p_token = float(_softmax(truncated)[token].item())
    observed = -math.log2(p_token) if p_token > 0 else float(stage.tau)
    return token, mu - stage.eta * (observed - stage.tau)


# =============================================================================
# Chain
# =============================================================================


class SamplerChain:
    """Ordered, caller-controlled pipeline of sampler stages.

    Thread-safety:
        A chain may be reused across sequential generations but is attached to
        at most one in-flight generation at a time; a second attach fails with
        `ResourceBusyError`.
    """

    def __init__(self, stages: Sequence[Sampler] = ()) -> None:
        self._stages: list[Sampler] = []
        self._mu: dict[int, float] = {}
        self._attach_lock = threading.Lock()
        self._disposed = False
        for stage in stages:
            self.add(stage)

    @classmethod
    def from_config(cls, config: SamplingConfig) -> "SamplerChain":
        """Build the default chain for a `SamplingConfig`.

        Order: penalty -> (greedy | mirostat | top-k, typical, top-p, min-p,
        temperature, final draw).
        """
        stages: list[Sampler] = []
        if config.repeat_penalty != 1.0 or config.frequency_penalty or config.presence_penalty:
            stages.append(
                Penalty(
                    repeat=config.repeat_penalty,
                    frequency=config.frequency_penalty,
                    presence=config.presence_penalty,
                    last_n=config.repeat_last_n,
                )
            )

        if config.temperature <= 0:
            stages.append(Greedy())
        elif config.mirostat == 1:
            stages.append(Temperature(config.temperature))
            stages.append(MirostatV1(tau=config.mirostat_tau, eta=config.mirostat_eta))
        elif config.mirostat == 2:
            stages.append(Temperature(config.temperature))
            stages.append(MirostatV2(tau=config.mirostat_tau, eta=config.mirostat_eta))
        else:
            if config.top_k > 0:
                stages.append(TopK(config.top_k))
            if config.typical_p < 1.0:
                stages.append(Typical(config.typical_p))
            if config.top_p < 1.0:
                stages.append(TopP(config.top_p))
            if config.min_p > 0.0:
                stages.append(MinP(config.min_p))
            stages.append(Temperature(config.temperature))
        return cls(stages)

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def add(self, stage: Sampler) -> "SamplerChain":
        self._ensure_usable()
        if not isinstance(stage, _SAMPLER_TYPES):
            raise InvalidParamError(f"Unknown sampler stage: {stage!r}.")
        stage.validate()
        if self._stages and is_terminal(self._stages[-1]):
            raise InvalidParamError(
                f"Cannot add {type(stage).__name__} after terminal stage {type(self._stages[-1]).__name__}.",
                index=len(self._stages),
            )
        self._stages.append(stage)
        return self

    def remove_at(self, index: int) -> Sampler:
        self._ensure_usable()
        try:
            stage = self._stages.pop(index)
        except IndexError:
            raise InvalidParamError(f"Sampler index out of range: {index}.", index=index) from None
        self._mu.clear()
        return stage

    def clear(self) -> None:
        self._ensure_usable()
        self._stages.clear()
        self._mu.clear()

    def dispose(self) -> None:
        self._stages.clear()
        self._mu.clear()
        self._disposed = True

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def stages(self) -> tuple[Sampler, ...]:
        return tuple(self._stages)

    def __len__(self) -> int:
        return len(self._stages)

    def __iter__(self) -> Iterator[Sampler]:
        return iter(tuple(self._stages))

    def __getitem__(self, index: int) -> Sampler:
        return self._stages[index]

    def __repr__(self) -> str:
        return f"SamplerChain({list(self._stages)!r})"

    # -------------------------------------------------------------------------
    # Generation lifecycle
    # -------------------------------------------------------------------------

    def validate(self) -> None:
        self._ensure_usable()
        for i, stage in enumerate(self._stages[:-1]):
            if is_terminal(stage):
                raise InvalidParamError(
                    f"Terminal stage {type(stage).__name__} must be the last stage of the chain.",
                    index=i,
                )

    def attach(self, *, continue_state: bool = False) -> None:
        """Bind the chain to a generation; resets mirostat state unless continuing."""
        self.validate()
        if not self._attach_lock.acquire(blocking=False):
            raise ResourceBusyError("Sampler chain is already attached to an in-flight generation.")
        if not continue_state:
            self.reset()

    def detach(self) -> None:
        if self._attach_lock.locked():
            self._attach_lock.release()

    @property
    def attached(self) -> bool:
        return self._attach_lock.locked()

    def reset(self) -> None:
        self._mu.clear()

    def mirostat_mu(self, index: int) -> float | None:
        return self._mu.get(index)

    # -------------------------------------------------------------------------
    # Application
    # -------------------------------------------------------------------------

    def apply(
        self,
        logits: torch.Tensor,
        *,
        history: Sequence[int] = (),
        generator: torch.Generator | None = None,
    ) -> int:
        """Select the next token id from `logits` (shape (vocab_size,))."""
        self._ensure_usable()
        current = logits.detach().reshape(-1).float().cpu()

        for i, stage in enumerate(self._stages):
            if isinstance(stage, Temperature):
                current = _apply_temperature(stage, current)
            elif isinstance(stage, TopK):
                current = _apply_top_k(stage, current)
            elif isinstance(stage, TopP):
                current = _apply_top_p(stage, current)
            elif isinstance(stage, MinP):
                current = _apply_min_p(stage, current)
            elif isinstance(stage, Typical):
                current = _apply_typical(stage, current)
            elif isinstance(stage, Penalty):
                current = _apply_penalty(stage, current, history)
            elif isinstance(stage, Greedy):
                return int(torch.argmax(torch.nan_to_num(current, nan=float("-inf"))).item())
            elif isinstance(stage, MirostatV1):
                mu = self._mu.get(i, 2.0 * stage.tau)
                token, self._mu[i] = _select_mirostat_v1(stage, current, mu, generator)
                return token
            elif isinstance(stage, MirostatV2):
                mu = self._mu.get(i, 2.0 * stage.tau)
                token, self._mu[i] = _select_mirostat_v2(stage, current, mu, generator)
                return token
            else:  # pragma: no cover
                raise InvalidParamError(f"Unknown sampler stage: {stage!r}.")

        return _draw(current, generator)

    def probabilities(self, logits: torch.Tensor, *, history: Sequence[int] = ()) -> torch.Tensor:
        """Distribution left after the non-terminal stages (for inspection)."""
        self._ensure_usable()
        current = logits.detach().reshape(-1).float().cpu()
        for stage in self._stages:
            if is_terminal(stage):
                break
            if isinstance(stage, Temperature):
                current = _apply_temperature(stage, current)
            elif isinstance(stage, TopK):
                current = _apply_top_k(stage, current)
            elif isinstance(stage, TopP):
                current = _apply_top_p(stage, current)
            elif isinstance(stage, MinP):
                current = _apply_min_p(stage, current)
            elif isinstance(stage, Typical):
                current = _apply_typical(stage, current)
            elif isinstance(stage, Penalty):
                current = _apply_penalty(stage, current, history)
        return _softmax(current)

    def _ensure_usable(self) -> None:
        if self._disposed:
            raise InvalidParamError("Sampler chain has been disposed.")
