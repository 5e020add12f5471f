import pytest

torch = pytest.importorskip("torch", reason="torch not installed")
transformers = pytest.importorskip("transformers", reason="transformers not installed")

from llamafu.engine.backends.transformers import TransformersBackend
from llamafu.engine.chat_session import ChatSession
from llamafu.engine.errors import ContextOverflowError, InvalidParamError, LoraIncompatibleError
from llamafu.engine.session import ModelSession
from llamafu.engine.types import ModelConfig


VOCAB = 64


class _CharTokenizer:
    """Printable ASCII onto ids 3..63; 0 = pad, 1 = BOS, 2 = EOS."""

    bos_token_id = 1
    eos_token_id = 2
    chat_template = "role-tags"

    def __len__(self) -> int:
        return VOCAB

    def encode(self, text: str, *, add_special_tokens: bool = True):
        ids = [self.bos_token_id] if add_special_tokens else []
        ids.extend(3 + (ord(ch) - 32) % (VOCAB - 3) for ch in text)
        return ids

    def decode(self, ids, *, skip_special_tokens: bool = False):
        out = []
        for tid in ids:
            tid = int(tid)
            if tid < 3:
                if not skip_special_tokens:
                    out.append(f"<{tid}>")
                continue
            out.append(chr(32 + tid - 3))
        return "".join(out)

    def apply_chat_template(self, conversation, *, tokenize: bool = True, add_generation_prompt: bool = False):
        assert not tokenize
        out = "".join(f"<{m['role']}>{m['content']}</{m['role']}>" for m in conversation)
        if add_generation_prompt:
            out += "<assistant>"
        return out


def _tiny_model():
    from transformers import LlamaConfig, LlamaForCausalLM

    torch.manual_seed(0)
    config = LlamaConfig(
        vocab_size=VOCAB,
        hidden_size=32,
        intermediate_size=64,
        num_hidden_layers=2,
        num_attention_heads=4,
        num_key_value_heads=2,
        max_position_embeddings=256,
        bos_token_id=1,
        eos_token_id=2,
        pad_token_id=0,
    )
    return LlamaForCausalLM(config).eval()


def _loader(config):
    return _tiny_model(), _CharTokenizer()


@pytest.fixture
def tiny_config(model_file):
    return ModelConfig(model_path=model_file, context_size=64, threads=1, seed=0)


@pytest.fixture
def tiny_session(tiny_config):
    s = ModelSession.load(tiny_config, backend=TransformersBackend(model_loader=_loader))
    yield s
    s.dispose()


def test_metadata_from_model_config(tiny_session) -> None:
    md = tiny_session.metadata
    assert md.architecture == "llama"
    assert md.vocab_size == VOCAB
    assert md.embedding_size == 32
    assert md.layer_count == 2
    assert md.eos_token_id == 2
    assert not md.multimodal


def test_greedy_generation_is_deterministic(tiny_session) -> None:
    a = tiny_session.generate("Hello", max_tokens=8, temperature=0)
    b = tiny_session.generate("Hello", max_tokens=8, temperature=0)
    assert a.text == b.text
    assert a.usage == b.usage
    assert a.usage.prompt_tokens == 6
    assert a.usage.completion_tokens <= 8
    assert a.finish_reason in ("stop", "length")


def test_kv_cache_tracks_evaluated_tokens(tiny_session) -> None:
    resp = tiny_session.generate("Hi there", max_tokens=4, temperature=0, repeat_penalty=1.0)
    expected = resp.usage.prompt_tokens + resp.usage.completion_tokens
    if resp.finish_reason == "length":
        expected -= 1  # the last sampled token is never evaluated
    assert tiny_session.kv_cache_token_count == expected
    tiny_session.clear_kv_cache()
    assert tiny_session.kv_cache_token_count == 0


def test_state_roundtrip_reproduces_logits(tiny_session, tiny_config, tmp_path) -> None:
    tiny_session.generate("State test", max_tokens=5, temperature=0)
    kv = tiny_session.kv_cache_token_count
    logits = tiny_session.next_token_logits
    tiny_session.save_state(tmp_path / "state")

    with ModelSession.load(tiny_config, backend=TransformersBackend(model_loader=_loader)) as other:
        other.load_state(tmp_path / "state")
        assert other.kv_cache_token_count == kv
        assert torch.allclose(other.next_token_logits, logits)


def test_prompt_overflow(tiny_session) -> None:
    with pytest.raises(ContextOverflowError):
        tiny_session.generate("x" * 80)


def test_pooled_embeddings(tiny_session) -> None:
    vec = tiny_session.embeddings("embed me")
    assert vec.shape == (32,)
    assert torch.isfinite(vec).all()


def test_lora_compatibility_requires_adapter_dir(tiny_session, tmp_path) -> None:
    not_a_dir = tmp_path / "adapter.gguf"
    not_a_dir.write_bytes(b"\x00")
    with pytest.raises(LoraIncompatibleError):
        tiny_session.lora.load(not_a_dir)

    adapter_dir = tmp_path / "adapter"
    adapter_dir.mkdir()
    (adapter_dir / "adapter_config.json").write_text('{"target_modules": ["not_a_module"]}')
    assert not tiny_session.lora.is_compatible(adapter_dir)


def test_peft_adapter_attach_and_detach(tiny_session, tmp_path) -> None:
    peft = pytest.importorskip("peft", reason="peft not installed")

    adapter_dir = tmp_path / "adapter"
    lora_config = peft.LoraConfig(
        r=2,
        lora_alpha=4,
        target_modules=["q_proj", "v_proj"],
        init_lora_weights=False,
        task_type="CAUSAL_LM",
    )
    peft.get_peft_model(_tiny_model(), lora_config).save_pretrained(str(adapter_dir))

    tiny_session.generate("Adapter", max_tokens=1, temperature=0)
    base = tiny_session.next_token_logits

    adapter_id = tiny_session.lora.load(adapter_dir, 1.0)
    tiny_session.generate("Adapter", max_tokens=1, temperature=0)
    assert not torch.allclose(tiny_session.next_token_logits, base)

    tiny_session.lora.unload(adapter_id)
    tiny_session.generate("Adapter", max_tokens=1, temperature=0)
    assert torch.allclose(tiny_session.next_token_logits, base, atol=1e-5)


def test_model_chat_template_renders_through_tokenizer(tiny_session) -> None:
    chat = ChatSession(tiny_session, template="model", system_prompt="Be brief.")
    chat.append("user", "Hi")
    assert chat.render() == "<system>Be brief.</system><user>Hi</user><assistant>"
    assert chat.render(add_assistant=False) == "<system>Be brief.</system><user>Hi</user>"
    assert chat.template.stop == ()

    chat.clear()
    resp = chat.send("Yo", max_tokens=3, temperature=0)
    assert resp.usage.prompt_tokens == len("<system>Be brief.</system><user>Yo</user><assistant>") + 1
    assert [m.role for m in chat.history] == ["user", "assistant"]


def test_model_chat_template_missing(tiny_config) -> None:
    class _NoTemplateTokenizer(_CharTokenizer):
        chat_template = None

    backend = TransformersBackend(model_loader=lambda config: (_tiny_model(), _NoTemplateTokenizer()))
    with ModelSession.load(tiny_config, backend=backend) as s:
        chat = ChatSession(s, template="model")
        with pytest.raises(InvalidParamError):
            chat.render()
