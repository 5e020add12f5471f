# Inference backends
#
# Each backend implements a common interface for:
#   - Loading a model (and optional projector) into an opaque handle
#   - Tokenizing, evaluating and managing the KV cache
#   - Attaching LoRA adapters and running projector inference
#
# Sessions talk to backends only through BaseBackend and map their
# BackendError codes onto the engine error taxonomy.

from .base import BaseBackend, ModelMetadata

__all__ = ["BaseBackend", "ModelMetadata"]
