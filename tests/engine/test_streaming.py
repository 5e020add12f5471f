import asyncio

import pytest

torch = pytest.importorskip("torch", reason="torch not installed")

from fake_backend import FakeBackend

from llamafu.engine.errors import ResourceBusyError
from llamafu.engine.sampling import Greedy, SamplerChain, Temperature, TopK
from llamafu.engine.session import ModelSession
from llamafu.engine.stream import IncrementalDetokenizer, StopSequenceFilter


# -----------------------------------------------------------------------------
# Stop sequences / detokenizer
# -----------------------------------------------------------------------------


def test_stop_filter_holds_back_partial_match() -> None:
    f = StopSequenceFilter(["</s>"])
    assert f.feed("hello <") == "hell"
    assert f.feed("/") == "o"
    assert f.feed("s>") == " "
    assert f.stopped
    assert f.matched == "</s>"
    assert f.feed("more") == ""
    assert f.finish() == ""


def test_stop_filter_flushes_tail_without_match() -> None:
    f = StopSequenceFilter(["STOP"])
    out = f.feed("abc") + f.feed("ST")
    assert out == "ab"
    assert f.finish() == "cST"
    assert not f.stopped


def test_stop_filter_earliest_of_several() -> None:
    f = StopSequenceFilter(["bbb", "b"])
    assert f.feed("aab bbb") == "aa"
    assert f.matched == "b"


def test_stop_filter_without_stops_passes_through() -> None:
    f = StopSequenceFilter([])
    assert f.feed("abc") == "abc"
    assert f.finish() == ""


def test_detokenizer_holds_incomplete_characters() -> None:
    table = {10: b"\xe2", 11: b"\x82", 12: b"\xac", 13: b"!"}

    def detok(tokens):
        return b"".join(table[t] for t in tokens).decode("utf-8", errors="replace")

    d = IncrementalDetokenizer(detok)
    assert d.push(10) == ""
    assert d.push(11) == ""
    assert d.push(12) == "€"
    assert d.push(13) == "!"
    assert d.flush() == ""


def test_detokenizer_flush_drops_dangling_bytes() -> None:
    d = IncrementalDetokenizer(lambda toks: bytes(toks).decode("utf-8", errors="replace"))
    assert d.push(ord("a")) == "a"
    assert d.push(0xE2) == ""
    assert d.flush() == ""


# -----------------------------------------------------------------------------
# Custom sampler chains through the session
# -----------------------------------------------------------------------------


def test_custom_chain_topk_one_matches_greedy(session) -> None:
    greedy = session.generate("unscripted", max_tokens=12, sampler_chain=SamplerChain([Greedy()]))
    for stages in ([TopK(1), Temperature(2.0)], [Temperature(2.0), TopK(1)]):
        resp = session.generate("unscripted", max_tokens=12, sampler_chain=SamplerChain(stages))
        assert resp.text == greedy.text


def test_chain_attached_elsewhere_is_busy(model_config) -> None:
    chain = SamplerChain([Greedy()])
    with ModelSession.load(model_config, backend=FakeBackend()) as a, ModelSession.load(
        model_config, backend=FakeBackend()
    ) as b:
        stream = a.generate_stream("unscripted", max_tokens=4, sampler_chain=chain)
        stream.next()
        with pytest.raises(ResourceBusyError):
            b.generate("other", sampler_chain=chain)
        assert not b.busy
        stream.close()
        assert not chain.attached
        assert b.generate("other", max_tokens=2, sampler_chain=chain).usage.completion_tokens == 2


# -----------------------------------------------------------------------------
# Async
# -----------------------------------------------------------------------------


def test_agenerate_matches_generate(session) -> None:
    expected = session.generate("List:\n1.", temperature=0).text
    resp = asyncio.run(session.agenerate("List:\n1.", temperature=0))
    assert resp.text == expected
    assert resp.finish_reason == "stop"


def test_async_iteration_over_stream(session) -> None:
    async def consume() -> list[str]:
        stream = session.generate_stream("List:\n1.", temperature=0)
        return [piece async for piece in stream]

    pieces = asyncio.run(consume())
    assert "".join(pieces) == " a\n2. b\n3. c"
    assert not session.busy


def test_async_consumer_can_stop_early(session) -> None:
    async def consume() -> str:
        stream = session.generate_stream("unscripted", max_tokens=100)
        got = ""
        async for piece in stream:
            got += piece
            if len(got) >= 3:
                break
        stream.close()
        return got

    got = asyncio.run(consume())
    assert len(got) == 3
    assert not session.busy
