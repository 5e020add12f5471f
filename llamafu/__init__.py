"""
llamafu - On-device LLM inference orchestration.

Loads a model through a pluggable backend and exposes blocking, streaming and
async generation with composable sampler chains, LoRA adapters, image/audio
inputs with an embedding cache, and save/restore of the inference context.

Quick Start:
    from llamafu import ModelConfig, ModelSession

    with ModelSession.load(ModelConfig("model.gguf", context_size=2048)) as session:
        print(session.generate("Hello,", max_tokens=32, temperature=0).text)

        for fragment in session.generate_stream("Count to five:", max_tokens=32):
            print(fragment, end="", flush=True)

Submodules:
    - llamafu.engine.session: ModelSession
    - llamafu.engine.chat_session: ChatSession and templates
    - llamafu.engine.sampling: sampler variants and SamplerChain
    - llamafu.engine.media: MediaInput and the media pipeline
    - llamafu.engine.lora: adapter registry
    - llamafu.engine.errors: error taxonomy

Environment Variables:
    LLAMAFU_BACKEND: default backend name (default "transformers")
    LLAMAFU_THREADS: default inference thread count
    LLAMAFU_LOG_LEVEL: level used by configure_logging() when none is given
"""

from llamafu._version import __version__

# Sessions
from llamafu.engine.session import ModelSession
from llamafu.engine.chat_session import ChatSession
from llamafu.engine.chat_types import ChatConfig, ChatMessage
from llamafu.engine.templates import ChatTemplate, get_template, list_templates, model_template, register_template

# Requests / responses / configuration
from llamafu.engine.types import (
    AdapterInfo,
    GenerateResponse,
    GenerationRequest,
    GrammarConstraint,
    MediaConfig,
    ModelConfig,
    ModelInfo,
    SamplingConfig,
    Timing,
    Usage,
)

# Streaming
from llamafu.engine.stream import CancellationToken, TokenStream

# Sampling
from llamafu.engine.sampling import (
    Greedy,
    MinP,
    MirostatV1,
    MirostatV2,
    Penalty,
    Sampler,
    SamplerChain,
    Temperature,
    TopK,
    TopP,
    Typical,
)

# Media / LoRA
from llamafu.engine.media import MediaEmbedding, MediaInput
from llamafu.engine.lora import AdapterRegistry, LoraComposition

# Backends
from llamafu.engine.backends import BaseBackend, ModelMetadata
from llamafu.engine.registry import get_backend, list_backends, register_backend

# Errors
from llamafu.engine.errors import (
    BackendError,
    BackendErrorCode,
    ErrorEnvelope,
    ErrorKind,
    LlamafuError,
)

# Runtime utilities
from llamafu.runtime import configure_logging, default_thread_count, is_cuda_available

__all__ = [
    # Version
    "__version__",
    # Sessions
    "ModelSession",
    "ChatSession",
    "ChatConfig",
    "ChatMessage",
    "ChatTemplate",
    "get_template",
    "list_templates",
    "model_template",
    "register_template",
    # Types
    "AdapterInfo",
    "GenerateResponse",
    "GenerationRequest",
    "GrammarConstraint",
    "MediaConfig",
    "ModelConfig",
    "ModelInfo",
    "SamplingConfig",
    "Timing",
    "Usage",
    # Streaming
    "CancellationToken",
    "TokenStream",
    # Sampling
    "Greedy",
    "MinP",
    "MirostatV1",
    "MirostatV2",
    "Penalty",
    "Sampler",
    "SamplerChain",
    "Temperature",
    "TopK",
    "TopP",
    "Typical",
    # Media / LoRA
    "MediaEmbedding",
    "MediaInput",
    "AdapterRegistry",
    "LoraComposition",
    # Backends
    "BaseBackend",
    "ModelMetadata",
    "get_backend",
    "list_backends",
    "register_backend",
    # Errors
    "BackendError",
    "BackendErrorCode",
    "ErrorEnvelope",
    "ErrorKind",
    "LlamafuError",
    # Runtime
    "configure_logging",
    "default_thread_count",
    "is_cuda_available",
]
