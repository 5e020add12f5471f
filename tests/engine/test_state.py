import json
from dataclasses import replace

import pytest

torch = pytest.importorskip("torch", reason="torch not installed")

from fake_backend import FakeBackend

from llamafu.engine.errors import ContextOverflowError, InvalidStateError, StateLoadError
from llamafu.engine.session import ModelSession
from llamafu.engine.state import MANIFEST_FILE, SCHEMA, compute_compatibility


def test_save_load_roundtrip_restores_kv_and_logits(session, model_config, tmp_path) -> None:
    session.generate("List:\n1.", temperature=0, max_tokens=4)
    kv = session.kv_cache_token_count
    logits = session.next_token_logits
    dest = tmp_path / "state"
    session.save_state(dest)

    assert (dest / MANIFEST_FILE).is_file()
    manifest = json.loads((dest / MANIFEST_FILE).read_text())
    assert manifest["schema"] == SCHEMA
    assert manifest["session"]["n_past"] == kv

    with ModelSession.load(model_config, backend=FakeBackend()) as other:
        other.load_state(dest)
        assert other.kv_cache_token_count == kv
        assert torch.equal(other.next_token_logits, logits)


def test_restored_state_continues_identically(session, model_config, tmp_path) -> None:
    session.generate("warmup", max_tokens=2)
    session.save_state(tmp_path / "s")
    a = session.generate("unscripted", max_tokens=6, temperature=1.2)

    with ModelSession.load(model_config, backend=FakeBackend()) as other:
        other.load_state(tmp_path / "s")
        b = other.generate("unscripted", max_tokens=6, temperature=1.2)
    assert a.text == b.text


def test_save_replaces_existing_state(session, tmp_path) -> None:
    dest = tmp_path / "states" / "state"
    session.generate("one", max_tokens=1)
    session.save_state(dest)
    session.generate("a longer prompt", max_tokens=1)
    session.save_state(dest)
    manifest = json.loads((dest / MANIFEST_FILE).read_text())
    assert manifest["session"]["n_past"] == len("a longer prompt") + 1
    assert [p.name for p in dest.parent.iterdir()] == ["state"]


def test_mismatched_model_is_invalid_state(session, model_config, tmp_path) -> None:
    session.generate("hi", max_tokens=1)
    session.save_state(tmp_path / "state")

    with ModelSession.load(model_config, backend=FakeBackend(architecture="otherarch")) as other:
        with pytest.raises(InvalidStateError):
            other.load_state(tmp_path / "state")
        assert other.kv_cache_token_count == 0


def test_missing_state_directory(session, tmp_path) -> None:
    with pytest.raises(StateLoadError):
        session.load_state(tmp_path / "nothing-here")


def test_corrupt_manifest(session, tmp_path) -> None:
    dest = tmp_path / "state"
    session.generate("hi", max_tokens=1)
    session.save_state(dest)
    (dest / MANIFEST_FILE).write_text("{not json")
    with pytest.raises(InvalidStateError):
        session.load_state(dest)

    (dest / MANIFEST_FILE).write_text(json.dumps({"schema": "something.else"}))
    with pytest.raises(InvalidStateError):
        session.load_state(dest)


def test_missing_engine_blob(session, tmp_path) -> None:
    dest = tmp_path / "state"
    session.generate("hi", max_tokens=1)
    session.save_state(dest)
    (dest / "engine.state").unlink()
    with pytest.raises(StateLoadError):
        session.load_state(dest)
    assert session.kv_cache_token_count == 0


def test_state_larger_than_context(session, model_config, tmp_path) -> None:
    session.generate("a fairly long prompt for a tiny context", max_tokens=1)
    session.save_state(tmp_path / "state")
    small = replace(model_config, context_size=8)
    with ModelSession.load(small, backend=FakeBackend()) as other:
        with pytest.raises(ContextOverflowError):
            other.load_state(tmp_path / "state")


def test_compatibility_fingerprint_depends_on_model() -> None:
    from llamafu.engine.backends.base import ModelMetadata

    a = ModelMetadata(architecture="llama", vocab_size=10, embedding_size=4, layer_count=2)
    b = replace(a, vocab_size=11)
    assert compute_compatibility(a, backend="x")["fingerprint"] == compute_compatibility(a, backend="x")["fingerprint"]
    assert compute_compatibility(a, backend="x")["fingerprint"] != compute_compatibility(b, backend="x")["fingerprint"]
    assert compute_compatibility(a, backend="x")["fingerprint"] != compute_compatibility(a, backend="y")["fingerprint"]
