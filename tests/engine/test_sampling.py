import pytest

torch = pytest.importorskip("torch", reason="torch not installed")

from llamafu.engine.errors import InvalidParamError, ResourceBusyError
from llamafu.engine.sampling import (
    Greedy,
    MinP,
    MirostatV1,
    MirostatV2,
    Penalty,
    SamplerChain,
    Temperature,
    TopK,
    TopP,
    Typical,
    is_terminal,
)
from llamafu.engine.types import SamplingConfig


def _logits() -> torch.Tensor:
    return torch.tensor([1.0, 4.0, 3.0, 2.0, 0.5])


def test_sampling_fp32_softmax_avoids_nan() -> None:
    # Extreme half-precision logits overflow a naive fp16 softmax.
    logits = torch.tensor([10000.0, -10000.0, 0.0], dtype=torch.float16)
    tok = SamplerChain([Temperature(0.1)]).apply(logits, generator=torch.Generator().manual_seed(0))
    assert tok == 0


def test_sampling_falls_back_to_argmax_on_nan() -> None:
    logits = torch.tensor([float("nan"), float("nan"), float("nan")])
    tok = SamplerChain([Temperature(0.7)]).apply(logits)
    assert tok in {0, 1, 2}


def test_greedy_picks_argmax() -> None:
    assert SamplerChain([Greedy()]).apply(_logits()) == 1


def test_topk_one_then_temperature_equals_greedy() -> None:
    g = torch.Generator().manual_seed(0)
    for order in ([TopK(1), Temperature(2.0)], [Temperature(2.0), TopK(1)]):
        chain = SamplerChain(order)
        picks = {chain.apply(_logits(), generator=g) for _ in range(20)}
        assert picks == {1}


def test_terminal_stage_must_be_last() -> None:
    chain = SamplerChain([Greedy()])
    with pytest.raises(InvalidParamError):
        chain.add(TopK(3))
    with pytest.raises(InvalidParamError):
        SamplerChain([MirostatV2(), Temperature(1.0)])
    assert is_terminal(Greedy())
    assert not is_terminal(TopP(0.9))


def test_invalid_stage_parameters() -> None:
    with pytest.raises(InvalidParamError):
        TopP(0.0).validate()
    with pytest.raises(InvalidParamError):
        SamplerChain([MinP(1.5)])
    with pytest.raises(InvalidParamError):
        SamplerChain([Penalty(repeat=0.0)])
    with pytest.raises(InvalidParamError):
        SamplerChain([MirostatV1(m=1)])
    with pytest.raises(InvalidParamError):
        SamplerChain().add("top_k")  # type: ignore[arg-type]


def test_mutation() -> None:
    chain = SamplerChain([TopK(3), TopP(0.9)])
    chain.add(Temperature(0.5))
    assert [type(s) for s in chain] == [TopK, TopP, Temperature]
    assert chain.remove_at(1) == TopP(0.9)
    assert len(chain) == 2
    with pytest.raises(InvalidParamError):
        chain.remove_at(7)
    chain.clear()
    assert chain.stages == ()


def test_disposed_chain_is_unusable() -> None:
    chain = SamplerChain([Greedy()])
    chain.dispose()
    assert chain.disposed
    with pytest.raises(InvalidParamError):
        chain.apply(_logits())


def test_top_k_prunes() -> None:
    probs = SamplerChain([TopK(2)]).probabilities(_logits())
    assert torch.count_nonzero(probs).item() == 2
    assert probs[1] > probs[2] > 0


def test_top_p_keeps_nucleus() -> None:
    logits = torch.log(torch.tensor([0.5, 0.3, 0.15, 0.05]))
    probs = SamplerChain([TopP(0.75)]).probabilities(logits)
    assert torch.count_nonzero(probs).item() == 2
    probs = SamplerChain([TopP(0.85)]).probabilities(logits)
    assert torch.count_nonzero(probs).item() == 3


def test_min_p_threshold() -> None:
    logits = torch.log(torch.tensor([0.5, 0.3, 0.15, 0.05]))
    probs = SamplerChain([MinP(0.2)]).probabilities(logits)
    assert probs[3].item() == 0.0
    assert probs[2].item() > 0.0


def test_typical_keeps_min_keep() -> None:
    logits = torch.log(torch.tensor([0.7, 0.1, 0.1, 0.1]))
    probs = SamplerChain([Typical(0.01, min_keep=2)]).probabilities(logits)
    assert torch.count_nonzero(probs).item() == 2


def test_temperature_zero_keeps_argmax() -> None:
    probs = SamplerChain([Temperature(0.0)]).probabilities(_logits())
    assert probs[1].item() == pytest.approx(1.0)


def test_penalty_discourages_history() -> None:
    logits = torch.tensor([3.0, 2.9, 0.0])
    chain = SamplerChain([Penalty(repeat=1.5, last_n=8), Greedy()])
    assert chain.apply(logits) == 0
    assert chain.apply(logits, history=[0, 0]) == 1


def test_frequency_and_presence_penalties() -> None:
    logits = torch.tensor([3.0, 2.5])
    chain = SamplerChain([Penalty(repeat=1.0, frequency=0.2, presence=0.0), Greedy()])
    assert chain.apply(logits, history=[0]) == 0
    assert chain.apply(logits, history=[0, 0, 0]) == 1
    chain = SamplerChain([Penalty(repeat=1.0, presence=1.0), Greedy()])
    assert chain.apply(logits, history=[0]) == 1


def test_seeded_draw_is_reproducible() -> None:
    chain = SamplerChain([Temperature(1.0)])
    logits = torch.zeros(50)
    a = [chain.apply(logits, generator=torch.Generator().manual_seed(3)) for _ in range(5)]
    b = [chain.apply(logits, generator=torch.Generator().manual_seed(3)) for _ in range(5)]
    assert a == b


def test_mirostat_v2_updates_and_resets_mu() -> None:
    chain = SamplerChain([Temperature(1.0), MirostatV2(tau=3.0, eta=0.5)])
    g = torch.Generator().manual_seed(0)
    chain.attach()
    chain.apply(_logits(), generator=g)
    mu = chain.mirostat_mu(1)
    assert mu is not None and mu != 6.0
    chain.detach()

    chain.attach(continue_state=True)
    assert chain.mirostat_mu(1) == mu
    chain.detach()

    chain.attach()
    assert chain.mirostat_mu(1) is None
    chain.detach()


def test_mirostat_v1_selects_valid_token() -> None:
    chain = SamplerChain([MirostatV1(tau=5.0, eta=0.1, m=4)])
    tok = chain.apply(torch.linspace(0.0, 5.0, 32), generator=torch.Generator().manual_seed(0))
    assert 0 <= tok < 32
    assert chain.mirostat_mu(0) is not None


def test_attach_twice_is_busy() -> None:
    chain = SamplerChain([Greedy()])
    chain.attach()
    assert chain.attached
    with pytest.raises(ResourceBusyError):
        chain.attach()
    chain.detach()
    assert not chain.attached


def test_from_config_orders_stages() -> None:
    chain = SamplerChain.from_config(SamplingConfig(temperature=0.7, top_k=20, top_p=0.9, min_p=0.0, typical_p=0.95))
    assert [type(s) for s in chain] == [Penalty, TopK, Typical, TopP, Temperature]

    greedy = SamplerChain.from_config(SamplingConfig(temperature=0.0, repeat_penalty=1.0))
    assert greedy.stages == (Greedy(),)

    miro = SamplerChain.from_config(SamplingConfig(mirostat=2, repeat_penalty=1.0))
    assert [type(s) for s in miro] == [Temperature, MirostatV2]
