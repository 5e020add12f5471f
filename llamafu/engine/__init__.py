# On-device inference orchestration
#
# This package coordinates one loaded model per session: request
# validation, streaming generation with cooperative cancellation, sampler
# chains, LoRA adapters, multimodal inputs and state persistence.
#
# Key components:
#   - backends/         Native engine boundary (BaseBackend + implementations)
#   - registry.py       Maps backend names to backend classes
#   - session.py        ModelSession: lifecycle, exclusive access, generation loop
#   - stream.py         TokenStream cursor, cancellation, stop-sequence handling
#   - sampling.py       Sampler variants and SamplerChain
#   - lora.py           Adapter registry and composition policy
#   - media.py          Media decoding, projector embeddings, content cache
#   - state.py          On-disk session state layout
#   - chat_session.py   Conversation history on top of a session
#   - templates.py      Chat templates
#   - errors.py         Error taxonomy and backend error mapping
#   - types.py          Config, request and response types
