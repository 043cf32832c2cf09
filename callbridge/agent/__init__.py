"""
Agent module: the voice backends a call can be driven by.

Key components:
- VoiceBackendAdapter: the interface the session manager is written against,
  with the SynthesizedChunk value object adapters emit.
- ComposedPipelineAdapter: Deepgram speech-to-text, an OpenAI-compatible
  conversation engine with per-call capabilities, and ElevenLabs synthesis,
  chained as an explicit per-utterance pipeline.
- ManagedConversationalAdapter: ElevenLabs Conversational AI, which
  recognizes, reasons and speaks by itself.
- ApologySpeaker: plays the canned apology when a backend is unavailable.

Usage examples:
```python
from callbridge.agent import create_adapter
from callbridge.config.settings import settings

adapter = create_adapter(settings)
adapter.on_synthesized_chunk(handle_chunk)
await adapter.initialize(config)
```
"""

from callbridge.agent.base import SynthesizedChunk, VoiceBackendAdapter
from callbridge.agent.composed import ComposedPipelineAdapter
from callbridge.agent.fallback import ApologySpeaker
from callbridge.agent.managed import ManagedConversationalAdapter
from callbridge.config.settings import Settings
from callbridge.services.conversation_engine import ConversationEngine
from callbridge.services.synthesis import SpeechSynthesisClient
from callbridge.services.transcription import SpeechToTextClient


def create_synthesis_client(settings: Settings) -> SpeechSynthesisClient:
    return SpeechSynthesisClient(
        api_key=settings.elevenlabs_api_key,
        voice_id=settings.elevenlabs_voice_id,
        model_id=settings.elevenlabs_tts_model,
    )


def create_adapter(settings: Settings) -> VoiceBackendAdapter:
    """Build a fresh adapter for one call according to ``VOICE_BACKEND``."""
    if settings.voice_backend == "composed":
        return ComposedPipelineAdapter(
            stt=SpeechToTextClient(settings.deepgram_api_key, model=settings.deepgram_model),
            engine=ConversationEngine(
                api_key=settings.llm_api_key,
                base_url=settings.llm_base_url,
                model=settings.llm_model,
            ),
            tts=create_synthesis_client(settings),
        )
    return ManagedConversationalAdapter(
        api_key=settings.elevenlabs_api_key, agent_id=settings.elevenlabs_agent_id
    )


__all__ = [
    "ApologySpeaker",
    "ComposedPipelineAdapter",
    "ManagedConversationalAdapter",
    "SynthesizedChunk",
    "VoiceBackendAdapter",
    "create_adapter",
    "create_synthesis_client",
]
