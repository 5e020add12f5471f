import pytest

from fake_backend import FakeBackend

from llamafu.engine.session import ModelSession
from llamafu.engine.types import ModelConfig


SCRIPTS = {
    "List:\n1.": " a\n2. b\n3. c",
    "User: Hi\nAssistant:": " Hello there!",
    "Q: 2+2=": "4",
}


@pytest.fixture
def model_file(tmp_path):
    path = tmp_path / "tiny.gguf"
    path.write_bytes(b"GGUF" + b"\x00" * 28)
    return str(path)


@pytest.fixture
def model_config(model_file):
    return ModelConfig(model_path=model_file, context_size=256, threads=1, seed=1234, backend="fake")


@pytest.fixture
def backend():
    return FakeBackend(SCRIPTS)


@pytest.fixture
def session(model_config, backend):
    s = ModelSession.load(model_config, backend=backend)
    yield s
    s.dispose()
