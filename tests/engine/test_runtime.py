import logging

import pytest

torch = pytest.importorskip("torch", reason="torch not installed")

from fake_backend import FakeBackend

from llamafu.engine.errors import InvalidParamError
from llamafu.engine.registry import get_backend, list_backends, register_backend
from llamafu.runtime import configure_logging, default_thread_count, select_device


def test_default_backend_is_registered() -> None:
    assert "transformers" in list_backends()
    assert get_backend("transformers").name == "transformers"


def test_unknown_backend_is_invalid_param() -> None:
    with pytest.raises(InvalidParamError) as excinfo:
        get_backend("does-not-exist")
    assert excinfo.value.context["backend"] == "does-not-exist"


def test_register_backend_requires_subclass() -> None:
    with pytest.raises(InvalidParamError):
        register_backend("bogus", object)  # type: ignore[arg-type]
    register_backend("fake", FakeBackend)
    assert isinstance(get_backend("fake"), FakeBackend)


def test_thread_count_env_override(monkeypatch) -> None:
    monkeypatch.setenv("LLAMAFU_THREADS", "3")
    assert default_thread_count() == 3
    monkeypatch.setenv("LLAMAFU_THREADS", "zero")
    assert 1 <= default_thread_count() <= 8
    monkeypatch.delenv("LLAMAFU_THREADS")
    assert 1 <= default_thread_count() <= 8


def test_cpu_only_when_no_gpu_layers() -> None:
    assert select_device(0) == "cpu"


def test_configure_logging_is_idempotent(monkeypatch) -> None:
    monkeypatch.setenv("LLAMAFU_LOG_LEVEL", "debug")
    logger = configure_logging()
    configure_logging()
    assert logger.level == logging.DEBUG
    assert sum(1 for h in logger.handlers if getattr(h, "_llamafu_default", False)) == 1
    configure_logging("nonsense-level")
    assert logger.level == logging.WARNING
