"""
Pydantic models for the messages callbridge exchanges with its peers.

Three message families are modelled as closed tagged unions:
- Twilio media stream events received on the ``/connection`` WebSocket
  (discriminated on ``event``) and the commands sent back on it.
- Messages received from the managed conversational agent service
  (discriminated on ``type``).
- HTTP request/response bodies of the provisioning surface.
"""

import base64
import binascii
import logging
import re
from typing import Annotated, Any, Dict, List, Literal, Optional, Pattern, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from callbridge.config.constants import (
    AGENT_MESSAGE_AGENT_CORRECTION,
    AGENT_MESSAGE_AGENT_RESPONSE,
    AGENT_MESSAGE_AUDIO,
    AGENT_MESSAGE_ERROR,
    AGENT_MESSAGE_INIT_METADATA,
    AGENT_MESSAGE_INTERRUPTION,
    AGENT_MESSAGE_PING,
    AGENT_MESSAGE_TOOL_CALL,
    AGENT_MESSAGE_USER_TRANSCRIPT,
    COMMAND_CLEAR,
    COMMAND_MARK,
    COMMAND_MEDIA,
    EVENT_CONNECTED,
    EVENT_DTMF,
    EVENT_MARK,
    EVENT_MEDIA,
    EVENT_START,
    EVENT_STOP,
    LOGGER_NAME,
)

logger = logging.getLogger(LOGGER_NAME)

E164_PATTERN: Pattern = re.compile(r"^\+[1-9]\d{1,14}$")


# Twilio media stream: inbound events
class StreamMessage(BaseModel):
    """Base model for all media stream events."""

    event: str = Field(..., description="Event name")
    sequenceNumber: Optional[str] = Field(None, description="Per-stream sequence number")
    streamSid: Optional[str] = Field(None, description="Media stream identifier")


class ConnectedEvent(StreamMessage):
    """First message on a new media stream connection."""

    event: Literal[EVENT_CONNECTED]
    protocol: Optional[str] = None
    version: Optional[str] = None


class StartMetadata(BaseModel):
    streamSid: str
    callSid: str
    accountSid: Optional[str] = None
    tracks: List[str] = Field(default_factory=list)
    customParameters: Dict[str, str] = Field(default_factory=dict)
    mediaFormat: Dict[str, Any] = Field(default_factory=dict)


class StartEvent(StreamMessage):
    """Stream metadata; sent once when the media transport opens."""

    event: Literal[EVENT_START]
    start: StartMetadata


class MediaPayload(BaseModel):
    payload: str = Field(..., description="Base64-encoded mu-law audio")
    track: Optional[str] = None
    chunk: Optional[str] = None
    timestamp: Optional[str] = None

    def decode(self) -> bytes:
        """Decode the audio payload, raising ValueError when it is not base64."""
        try:
            return base64.b64decode(self.payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid base64 media payload: {e}") from e


class MediaEvent(StreamMessage):
    """One frame of caller audio."""

    event: Literal[EVENT_MEDIA]
    media: MediaPayload


class MarkName(BaseModel):
    name: str


class MarkEvent(StreamMessage):
    """Playback acknowledgment for a previously sent mark."""

    event: Literal[EVENT_MARK]
    mark: MarkName


class StopEvent(StreamMessage):
    """The media stream has ended."""

    event: Literal[EVENT_STOP]
    stop: Dict[str, Any] = Field(default_factory=dict)


class DtmfDigit(BaseModel):
    digit: str
    track: Optional[str] = None

    @field_validator("digit")
    def validate_digit(cls, v):
        """Validate that the digit is a DTMF symbol."""
        if len(v) != 1 or v not in "0123456789*#ABCD":
            raise ValueError(f"Invalid DTMF digit: {v}")
        return v


class DtmfEvent(StreamMessage):
    event: Literal[EVENT_DTMF]
    dtmf: DtmfDigit


StreamEvent = Annotated[
    Union[ConnectedEvent, StartEvent, MediaEvent, MarkEvent, StopEvent, DtmfEvent],
    Field(discriminator="event"),
]

_stream_event_adapter = TypeAdapter(StreamEvent)


def parse_stream_event(raw: Union[str, bytes]) -> StreamEvent:
    """
    Parse one raw media stream message into its event variant.

    Raises:
        pydantic.ValidationError: The message is not JSON or not a known event.
    """
    return _stream_event_adapter.validate_json(raw)


# Twilio media stream: outbound commands
class OutboundMediaPayload(BaseModel):
    payload: str


class OutboundMedia(BaseModel):
    """Audio to play on the line."""

    event: Literal[COMMAND_MEDIA] = COMMAND_MEDIA
    streamSid: str
    media: OutboundMediaPayload

    @classmethod
    def from_audio(cls, stream_sid: str, audio: bytes) -> "OutboundMedia":
        return cls(
            streamSid=stream_sid,
            media=OutboundMediaPayload(payload=base64.b64encode(audio).decode("utf-8")),
        )


class OutboundMark(BaseModel):
    """Ask the transport to acknowledge when playback reaches this point."""

    event: Literal[COMMAND_MARK] = COMMAND_MARK
    streamSid: str
    mark: MarkName


class ClearCommand(BaseModel):
    """Discard all audio buffered on the transport side."""

    event: Literal[COMMAND_CLEAR] = COMMAND_CLEAR
    streamSid: str


OutboundCommand = Union[OutboundMedia, OutboundMark, ClearCommand]


# Managed conversational agent: inbound messages
class AgentMessage(BaseModel):
    type: str


class AudioEventBody(BaseModel):
    audio_base_64: str
    event_id: int = 0


class AgentAudioMessage(AgentMessage):
    type: Literal[AGENT_MESSAGE_AUDIO]
    audio_event: AudioEventBody


class AgentResponseBody(BaseModel):
    agent_response: str = ""


class AgentResponseMessage(AgentMessage):
    type: Literal[AGENT_MESSAGE_AGENT_RESPONSE]
    agent_response_event: AgentResponseBody


class AgentCorrectionBody(BaseModel):
    original_agent_response: str = ""
    corrected_agent_response: str = ""


class AgentResponseCorrectionMessage(AgentMessage):
    type: Literal[AGENT_MESSAGE_AGENT_CORRECTION]
    agent_response_correction_event: AgentCorrectionBody


class UserTranscriptionBody(BaseModel):
    user_transcript: str = ""


class UserTranscriptMessage(AgentMessage):
    type: Literal[AGENT_MESSAGE_USER_TRANSCRIPT]
    user_transcription_event: UserTranscriptionBody


class InterruptionBody(BaseModel):
    event_id: Optional[int] = None
    reason: Optional[str] = None


class InterruptionMessage(AgentMessage):
    type: Literal[AGENT_MESSAGE_INTERRUPTION]
    interruption_event: InterruptionBody = Field(default_factory=InterruptionBody)


class PingBody(BaseModel):
    event_id: int
    ping_ms: Optional[int] = None


class PingMessage(AgentMessage):
    type: Literal[AGENT_MESSAGE_PING]
    ping_event: PingBody


class InitMetadataBody(BaseModel):
    conversation_id: Optional[str] = None
    agent_output_audio_format: Optional[str] = None
    user_input_audio_format: Optional[str] = None


class ConversationInitiationMetadataMessage(AgentMessage):
    type: Literal[AGENT_MESSAGE_INIT_METADATA]
    conversation_initiation_metadata_event: InitMetadataBody = Field(
        default_factory=InitMetadataBody
    )


class ToolCallBody(BaseModel):
    tool_name: str
    tool_call_id: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ClientToolCallMessage(AgentMessage):
    type: Literal[AGENT_MESSAGE_TOOL_CALL]
    client_tool_call: ToolCallBody


class AgentErrorMessage(AgentMessage):
    type: Literal[AGENT_MESSAGE_ERROR]
    error: Optional[Any] = None
    message: Optional[str] = None


AgentInbound = Annotated[
    Union[
        AgentAudioMessage,
        AgentResponseMessage,
        AgentResponseCorrectionMessage,
        UserTranscriptMessage,
        InterruptionMessage,
        PingMessage,
        ConversationInitiationMetadataMessage,
        ClientToolCallMessage,
        AgentErrorMessage,
    ],
    Field(discriminator="type"),
]

_agent_message_adapter = TypeAdapter(AgentInbound)

KNOWN_AGENT_MESSAGE_TYPES = frozenset(
    {
        AGENT_MESSAGE_AUDIO,
        AGENT_MESSAGE_AGENT_RESPONSE,
        AGENT_MESSAGE_AGENT_CORRECTION,
        AGENT_MESSAGE_USER_TRANSCRIPT,
        AGENT_MESSAGE_INTERRUPTION,
        AGENT_MESSAGE_PING,
        AGENT_MESSAGE_INIT_METADATA,
        AGENT_MESSAGE_TOOL_CALL,
        AGENT_MESSAGE_ERROR,
    }
)


def parse_agent_message(data: Dict[str, Any]) -> Optional[AgentInbound]:
    """
    Parse a decoded agent message.

    Returns None for message types callbridge does not act on (VAD scores,
    tentative responses and similar telemetry).

    Raises:
        pydantic.ValidationError: A known message type has an invalid body.
    """
    msg_type = data.get("type")
    if msg_type not in KNOWN_AGENT_MESSAGE_TYPES:
        logger.debug(f"Ignoring agent message of type: {msg_type}")
        return None
    return _agent_message_adapter.validate_python(data)


# HTTP surface
class CapabilitySpec(BaseModel):
    """Declarative capability supplied with an outbound call request."""

    name: str = Field(..., pattern=r"^[a-zA-Z0-9_-]{1,64}$")
    description: str = ""
    parameters: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    webhook_url: Optional[str] = Field(
        None, description="Endpoint that executes the capability (JSON POST)"
    )


class OutboundCallRequest(BaseModel):
    number: str = Field(..., description="Destination in E.164 format")
    prompt: str = Field(..., min_length=1)
    first_message: str = Field(..., min_length=1)
    user_chat_id: Optional[str] = None
    capabilities: List[CapabilitySpec] = Field(default_factory=list)
    personalities: Dict[str, str] = Field(default_factory=dict)

    @field_validator("number")
    def validate_number(cls, v):
        """Validate that the destination number is E.164."""
        if not E164_PATTERN.match(v):
            raise ValueError("Invalid phone number format. Use E.164 format (e.g., +1234567890)")
        return v


class OutboundCallResponse(BaseModel):
    success: bool = True
    call_sid: str
    to: str
    status: Optional[str] = None
