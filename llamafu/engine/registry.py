"""Backend registry.

Maps backend names to their backend classes.
"""

from typing import Type

from .backends.base import BaseBackend
from .backends.transformers import TransformersBackend
from .errors import InvalidParamError

# Registry mapping backend names to backend classes
_BACKEND_REGISTRY: dict[str, Type[BaseBackend]] = {
    "transformers": TransformersBackend,
}


def get_backend(name: str) -> BaseBackend:
    """
    Get a backend instance by name.

    Args:
        name: Registered backend name (e.g., "transformers").

    Returns:
        A new backend instance.

    Raises:
        InvalidParamError: If the backend is not registered.
    """
    if name not in _BACKEND_REGISTRY:
        available = ", ".join(_BACKEND_REGISTRY.keys())
        raise InvalidParamError(f"Unknown backend: {name!r}. Available: {available}", backend=name)
    return _BACKEND_REGISTRY[name]()


def register_backend(name: str, backend_cls: Type[BaseBackend]) -> None:
    """
    Register a backend class under `name`.

    Args:
        name: Backend name used in `ModelConfig.backend`.
        backend_cls: Backend class (must inherit from BaseBackend).
    """
    if not (isinstance(backend_cls, type) and issubclass(backend_cls, BaseBackend)):
        raise InvalidParamError(f"{backend_cls!r} is not a BaseBackend subclass.")
    _BACKEND_REGISTRY[name] = backend_cls


def list_backends() -> list[str]:
    """Return list of registered backend names."""
    return list(_BACKEND_REGISTRY.keys())
