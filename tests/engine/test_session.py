import threading

import pytest

torch = pytest.importorskip("torch", reason="torch not installed")

from fake_backend import EOS, FakeBackend

from llamafu.engine.errors import (
    BackendError,
    BackendErrorCode,
    ContextOverflowError,
    GenerationAbortedError,
    GrammarInitError,
    InferenceFailedError,
    InvalidParamError,
    ModelAlreadyLoadedError,
    ModelInvalidFormatError,
    ModelLoadFailedError,
    ModelNotFoundError,
    OutOfMemoryError,
    ResourceBusyError,
    VisionInitError,
)
from llamafu.engine.session import ModelSession, check_model_file
from llamafu.engine.stream import CancellationToken
from llamafu.engine.types import GenerationRequest, GrammarConstraint, ModelConfig, SamplingConfig


# -----------------------------------------------------------------------------
# Lifecycle
# -----------------------------------------------------------------------------


def test_load_dispose_cycles_free_exactly_once(model_config) -> None:
    backend = FakeBackend()
    for _ in range(3):
        session = ModelSession.load(model_config, backend=backend)
        assert session.is_open
        session.generate("hello", max_tokens=3)
        session.dispose()
        session.dispose()
        assert not session.is_open

    assert backend.load_count == 3
    assert backend.free_count == 3


def test_context_manager_disposes(model_config) -> None:
    backend = FakeBackend()
    with ModelSession(model_config, backend=backend) as session:
        assert session.info.architecture == "fakellama"
        assert session.info.threads == 1
    assert backend.free_count == 1
    with pytest.raises(InvalidParamError):
        session.generate("hi")


def test_open_twice_is_rejected(session) -> None:
    with pytest.raises(ModelAlreadyLoadedError):
        session.open()


def test_missing_model_file(tmp_path) -> None:
    config = ModelConfig(model_path=str(tmp_path / "nope.gguf"), threads=1)
    with pytest.raises(ModelNotFoundError):
        ModelSession.load(config, backend=FakeBackend())


def test_bad_magic_is_invalid_format(tmp_path) -> None:
    path = tmp_path / "model.bin"
    path.write_bytes(b"NOTGGUF")
    with pytest.raises(ModelInvalidFormatError):
        check_model_file(str(path))


def test_model_directory_needs_config(tmp_path) -> None:
    with pytest.raises(ModelInvalidFormatError):
        check_model_file(str(tmp_path))
    (tmp_path / "config.json").write_text("{}")
    check_model_file(str(tmp_path))


def test_missing_projector_fails_before_backend_load(model_file, tmp_path) -> None:
    backend = FakeBackend(multimodal=True)
    config = ModelConfig(model_path=model_file, projector_path=str(tmp_path / "mmproj.gguf"), threads=1)
    with pytest.raises(VisionInitError):
        ModelSession.load(config, backend=backend)
    assert backend.load_count == 0


def test_projector_without_multimodal_support_frees_model(model_file) -> None:
    backend = FakeBackend(multimodal=False)
    config = ModelConfig(model_path=model_file, projector_path=model_file, threads=1)
    with pytest.raises(VisionInitError):
        ModelSession.load(config, backend=backend)
    assert backend.load_count == 1
    assert backend.free_count == 1


@pytest.mark.parametrize(
    "error, expected",
    [
        (MemoryError(), OutOfMemoryError),
        (BackendError(BackendErrorCode.OUT_OF_MEMORY), OutOfMemoryError),
        (BackendError(BackendErrorCode.MODEL_LOAD_FAILED, "corrupt"), ModelLoadFailedError),
        (RuntimeError("boom"), ModelLoadFailedError),
    ],
)
def test_backend_load_errors_are_mapped(model_config, error, expected) -> None:
    with pytest.raises(expected):
        ModelSession.load(model_config, backend=FakeBackend(load_error=error))


def test_invalid_config_is_rejected(model_file) -> None:
    with pytest.raises(InvalidParamError):
        ModelSession.load(ModelConfig(model_path=model_file, context_size=0, threads=1), backend=FakeBackend())
    with pytest.raises(InvalidParamError):
        ModelSession.load(ModelConfig(model_path=model_file, threads=0), backend=FakeBackend())


# -----------------------------------------------------------------------------
# Generation
# -----------------------------------------------------------------------------


def test_scripted_greedy_generation_stops_at_eos(session) -> None:
    resp = session.generate("Q: 2+2=", temperature=0)
    assert resp.text == "4"
    assert resp.finish_reason == "stop"
    assert resp.usage.prompt_tokens == len("Q: 2+2=") + 1
    assert resp.usage.completion_tokens == 1
    assert resp.usage.total_tokens == len("Q: 2+2=") + 2
    assert resp.timing.prefill_s is not None


def test_max_tokens_bounds_completion(session) -> None:
    resp = session.generate("unscripted prompt", max_tokens=5)
    assert resp.usage.completion_tokens == 5
    assert resp.finish_reason == "length"
    assert len(resp.text) == 5


def test_stop_sequence_truncates_and_is_not_emitted(session) -> None:
    stream = session.generate_stream("List:\n1.", temperature=0, stop=["\n3."])
    pieces = list(stream)
    assert "".join(pieces) == " a\n2. b"
    assert stream.finish_reason == "stop"
    assert stream.usage.completion_tokens == len(" a\n2. b\n3.")


def test_stop_sequence_in_prompt_does_not_stop(session) -> None:
    resp = session.generate("List:\n1.", temperature=0, stop=["List"])
    assert resp.text == " a\n2. b\n3. c"


def test_same_seed_same_output(session) -> None:
    a = session.generate("seeded", max_tokens=24, temperature=1.5, seed=7)
    b = session.generate("seeded", max_tokens=24, temperature=1.5, seed=7)
    assert a.text == b.text


def test_session_seed_is_reproducible_across_sessions(model_config) -> None:
    texts = []
    for _ in range(2):
        with ModelSession.load(model_config, backend=FakeBackend()) as s:
            texts.append(s.generate("seeded", max_tokens=24, temperature=1.5).text)
    assert texts[0] == texts[1]


def test_tokenized_prompt(session) -> None:
    tokens = session.tokenize("Q: 2+2=")
    assert tokens[0] == 1
    assert session.detokenize(tokens) == "Q: 2+2="
    assert session.generate(tokens, temperature=0).text == "4"


def test_out_of_range_token_is_invalid(session) -> None:
    with pytest.raises(InvalidParamError):
        session.generate([1, 10_000])


def test_empty_prompt_and_unknown_option_are_invalid(session) -> None:
    with pytest.raises(InvalidParamError):
        session.generate("")
    with pytest.raises(InvalidParamError):
        session.generate("hi", not_an_option=1)
    with pytest.raises(InvalidParamError):
        session.generate("hi", max_tokens=0)


def test_request_object_with_overrides(session) -> None:
    req = GenerationRequest(prompt="anything", sampling=SamplingConfig(max_tokens=2))
    assert session.generate(req).usage.completion_tokens == 2
    assert session.generate(req, max_tokens=4).usage.completion_tokens == 4


def test_prompt_overflow_raises(model_file) -> None:
    config = ModelConfig(model_path=model_file, context_size=8, threads=1)
    with ModelSession.load(config, backend=FakeBackend()) as s:
        with pytest.raises(ContextOverflowError):
            s.generate("this prompt is much too long")
        assert not s.busy


def test_context_exhaustion_finishes_with_length(model_file) -> None:
    config = ModelConfig(model_path=model_file, context_size=12, threads=1)
    with ModelSession.load(config, backend=FakeBackend()) as s:
        resp = s.generate("abcdefgh", max_tokens=100)
        assert resp.finish_reason == "length"
        assert resp.usage.completion_tokens == 4
        assert s.kv_cache_token_count == 12


def test_backend_failure_maps_to_inference_failed_and_clears_kv(model_config) -> None:
    backend = FakeBackend(fail_after_evals=3)
    with ModelSession.load(model_config, backend=backend) as s:
        with pytest.raises(InferenceFailedError):
            s.generate("unscripted", max_tokens=10)
        assert s.kv_cache_token_count == 0
        assert not s.busy


def test_backend_failure_finishes_stream_with_error(model_config) -> None:
    backend = FakeBackend(fail_after_evals=3)
    seen: list[str | None] = []
    with ModelSession.load(model_config, backend=backend) as s:
        stream = s.generate_stream("unscripted", max_tokens=10)
        stream.add_done_callback(lambda state: seen.append(state.finish_reason))
        with pytest.raises(InferenceFailedError):
            for _ in stream:
                pass
        assert stream.finish_reason == "error"
        assert seen == ["error"]
        assert not s.busy


def test_grammar_constrains_tokens(session) -> None:
    resp = session.generate("number:", max_tokens=6, grammar=GrammarConstraint("digits"), temperature=0)
    assert resp.text
    assert resp.text.isdigit()


def test_grammar_unsupported_backend(model_config) -> None:
    with ModelSession.load(model_config, backend=FakeBackend(grammar=False)) as s:
        with pytest.raises(GrammarInitError):
            s.generate("x", grammar=GrammarConstraint("root ::= [0-9]+"))
        assert not s.busy


def test_embeddings(session) -> None:
    vec = session.embeddings("hello")
    assert vec.shape == (8,)
    assert session.kv_cache_token_count == 0


def test_set_thread_count(session) -> None:
    session.set_thread_count(3, 2)
    assert session.info.threads == 3
    assert session.info.threads_batch == 2
    with pytest.raises(InvalidParamError):
        session.set_thread_count(0)


def test_kv_cache_maintenance_keeps_contents_until_cleared(session) -> None:
    session.generate("hello", max_tokens=2)
    kv = session.kv_cache_token_count
    assert kv > 0
    session.defragment_kv_cache()
    assert session.kv_cache_token_count == kv
    session.clear_kv_cache()
    assert session.kv_cache_token_count == 0
    assert session.next_token_logits is None


# -----------------------------------------------------------------------------
# Streaming and cancellation
# -----------------------------------------------------------------------------


def test_stream_is_lazy(session, backend) -> None:
    stream = session.generate_stream("lazy", max_tokens=3)
    assert backend.eval_calls == 0
    assert stream.has_next()
    assert backend.eval_calls >= 1
    stream.close()


def test_stream_text_matches_blocking_output(session) -> None:
    stream = session.generate_stream("List:\n1.", temperature=0)
    streamed = "".join(stream)
    assert streamed == session.generate("List:\n1.", temperature=0).text
    assert stream.done
    assert not stream.has_next()
    with pytest.raises(StopIteration):
        stream.next()


def test_cancel_mid_stream(session) -> None:
    token = CancellationToken()
    stream = session.generate_stream("unscripted", max_tokens=50, cancel=token)
    first = stream.next()
    token.cancel()
    rest = list(stream)
    assert first
    assert rest == []
    assert stream.finish_reason == "cancelled"
    assert stream.usage.completion_tokens == 1
    assert not session.busy


def test_cancel_raises_when_requested(session) -> None:
    token = CancellationToken()
    stream = session.generate_stream("unscripted", max_tokens=50, cancel=token, raise_on_cancel=True)
    stream.next()
    stream.next()
    token.cancel()
    with pytest.raises(GenerationAbortedError) as excinfo:
        list(stream)
    assert len(excinfo.value.partial_text) == 2
    assert not session.busy


def test_deadline_token_cancels() -> None:
    now = [0.0]
    token = CancellationToken.with_deadline(1.0, clock=lambda: now[0])
    assert not token.is_cancelled
    now[0] = 1.5
    assert token.is_cancelled


def test_close_releases_session(session) -> None:
    stream = session.generate_stream("unscripted", max_tokens=50)
    stream.next()
    stream.close()
    stream.close()
    assert stream.finish_reason == "cancelled"
    assert session.generate("Q: 2+2=", temperature=0).text == "4"


def test_done_callback_receives_state(session) -> None:
    seen = []
    stream = session.generate_stream("Q: 2+2=", temperature=0)
    stream.add_done_callback(lambda state: seen.append((state.text, state.finish_reason)))
    list(stream)
    assert seen == [("4", "stop")]


# -----------------------------------------------------------------------------
# Concurrency
# -----------------------------------------------------------------------------


def test_open_stream_makes_session_busy(session) -> None:
    stream = session.generate_stream("unscripted", max_tokens=10)
    stream.next()
    assert session.busy

    with pytest.raises(ResourceBusyError):
        session.generate("other")
    with pytest.raises(ResourceBusyError):
        session.clear_kv_cache()
    with pytest.raises(ResourceBusyError):
        session.save_state("unused")

    stream.close()
    assert not session.busy
    session.clear_kv_cache()
    assert session.kv_cache_token_count == 0


def test_concurrent_generate_from_thread_is_rejected(model_config) -> None:
    gate = threading.Event()
    backend = FakeBackend(gate=gate)
    with ModelSession.load(model_config, backend=backend) as s:
        results = {}

        def worker() -> None:
            results["resp"] = s.generate("unscripted", max_tokens=2)

        t = threading.Thread(target=worker)
        t.start()
        assert backend.entered.wait(5)
        try:
            with pytest.raises(ResourceBusyError):
                s.generate("second caller")
        finally:
            gate.set()
            t.join(5)
        assert results["resp"].usage.completion_tokens == 2


def test_dispose_cancels_active_stream(model_config) -> None:
    backend = FakeBackend()
    s = ModelSession.load(model_config, backend=backend)
    stream = s.generate_stream("unscripted", max_tokens=50)
    stream.next()
    s.dispose()
    assert list(stream) == []
    assert stream.finish_reason == "cancelled"
    assert backend.free_count == 1


def test_dispose_waits_for_in_flight_evaluation(model_config) -> None:
    gate = threading.Event()
    backend = FakeBackend(gate=gate)
    s = ModelSession.load(model_config, backend=backend)
    results = {}

    def worker() -> None:
        results["resp"] = s.generate("unscripted", max_tokens=50)

    t = threading.Thread(target=worker)
    t.start()
    assert backend.entered.wait(5)
    try:
        s.dispose()
        assert backend.free_count == 0
        assert s.busy
    finally:
        gate.set()
        t.join(5)

    assert backend.freed_during_eval == 0
    assert backend.free_count == 1
    assert not s.is_open
    assert not s.busy
    assert results["resp"].finish_reason == "cancelled"
    s.dispose()
    assert backend.free_count == 1


def test_dispose_during_exclusive_operation_frees_after_it(model_config) -> None:
    gate = threading.Event()
    backend = FakeBackend(gate=gate)
    s = ModelSession.load(model_config, backend=backend)

    t = threading.Thread(target=lambda: s.embeddings("embed me"))
    t.start()
    assert backend.entered.wait(5)
    try:
        s.dispose()
        assert backend.free_count == 0
    finally:
        gate.set()
        t.join(5)

    assert backend.free_count == 1
    assert not s.is_open


def test_eos_token_is_not_emitted(session, backend) -> None:
    resp = session.generate("Q: 2+2=", temperature=0, max_tokens=10)
    assert chr(EOS) not in resp.text
