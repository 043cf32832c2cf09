"""
Services module for the media channel and external API integrations.

Key components:
- audio_channel: AudioFrameChannel over the Twilio media stream WebSocket.
- transcription: Deepgram streaming speech-to-text client.
- conversation_engine: OpenAI-compatible chat completions with per-call
  capabilities and personality adaptation.
- synthesis: ElevenLabs streaming text-to-speech client.
- telephony: Twilio REST client placing outbound calls.
- call_store: SQLite persistence of calls, transcripts and state changes.
- notifications: Telegram status and summary messages.
- summary: call summary built from the transcript at call end.
- lifecycle: LifecycleSink, fanning session events out to persistence and
  notification without blocking the call.
"""

# Services module initialization
