"""
Constants and configuration values used throughout the application.

This module keeps protocol event names, conversational defaults and the
tunables of the session engine in one place so the media relay, the voice
backends and the HTTP layer agree on them.
"""

# Logger name used throughout the application
LOGGER_NAME = "callbridge"

# Twilio media stream events (inbound, telephony -> callbridge)
EVENT_CONNECTED = "connected"
EVENT_START = "start"
EVENT_MEDIA = "media"
EVENT_MARK = "mark"
EVENT_STOP = "stop"
EVENT_DTMF = "dtmf"

# Twilio media stream commands (outbound, callbridge -> telephony)
COMMAND_MEDIA = "media"
COMMAND_CLEAR = "clear"
COMMAND_MARK = "mark"

# Managed conversational agent message types
AGENT_MESSAGE_AUDIO = "audio"
AGENT_MESSAGE_AGENT_RESPONSE = "agent_response"
AGENT_MESSAGE_AGENT_CORRECTION = "agent_response_correction"
AGENT_MESSAGE_USER_TRANSCRIPT = "user_transcript"
AGENT_MESSAGE_INTERRUPTION = "interruption"
AGENT_MESSAGE_PING = "ping"
AGENT_MESSAGE_PONG = "pong"
AGENT_MESSAGE_INIT_METADATA = "conversation_initiation_metadata"
AGENT_MESSAGE_INIT_CLIENT_DATA = "conversation_initiation_client_data"
AGENT_MESSAGE_TOOL_CALL = "client_tool_call"
AGENT_MESSAGE_TOOL_RESULT = "client_tool_result"
AGENT_MESSAGE_USER_MESSAGE = "user_message"
AGENT_MESSAGE_ERROR = "error"

# Line audio: Twilio media streams carry 8 kHz mu-law
LINE_AUDIO_ENCODING = "mulaw"
LINE_SAMPLE_RATE = 8000
TTS_OUTPUT_FORMAT = "ulaw_8000"

# Conversational defaults for calls that were never provisioned
DEFAULT_PROMPT = (
    "You are a friendly and concise phone assistant. Keep replies short, "
    "speak naturally and ask one question at a time."
)
DEFAULT_FIRST_MESSAGE = "Hello! How can I help you today?"
APOLOGY_MESSAGE = "I'm sorry, I'm having trouble right now. Could you say that again?"

# Barge-in: a partial utterance must be longer than this many characters
# before outstanding playback is cleared (filters noise and backchannel).
MIN_INTERRUPTION_CHARS = 5

# Provisioned configurations that never see a stream-open are evicted
CONFIG_TTL_SECONDS = 60 * 60
EVICTION_INTERVAL_SECONDS = 60

# Fallback apology is played when the backend has not produced audio for a
# submitted utterance within this window.
REPLY_TIMEOUT_SECONDS = 12.0

# Deferred hang-up waits at most this long for outstanding marks to drain
CLOSE_GRACE_SECONDS = 10.0

# Tool-call rounds allowed per utterance in the composed pipeline
MAX_TOOL_ROUNDS = 3

# Speakers recorded in transcripts
SPEAKER_USER = "user"
SPEAKER_AI = "ai"
