"""
Per-call data model.

A CallSession is owned by exactly one CallSessionManager. Its configuration is
captured once at call-initiation time (or defaulted on first stream-open) and
never mutated afterwards.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from callbridge.config.constants import DEFAULT_FIRST_MESSAGE, DEFAULT_PROMPT

CapabilityHandler = Callable[..., Awaitable[Any]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CallState(str, Enum):
    """Lifecycle of one call session."""

    AWAITING_STREAM = "awaiting_stream"
    STREAMING = "streaming"
    ENDED = "ended"


class Capability(BaseModel):
    """A named action the conversation engine may invoke during a call."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str = Field(..., pattern=r"^[a-zA-Z0-9_-]{1,64}$")
    description: str = ""
    parameters: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    handler: Optional[CapabilityHandler] = Field(default=None, exclude=True)

    def to_tool_schema(self) -> Dict[str, Any]:
        """Render the capability as a chat-completions ``tools`` entry."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    async def invoke(self, arguments: Dict[str, Any]) -> Any:
        if self.handler is None:
            return {"error": f"capability '{self.name}' has no implementation"}
        return await self.handler(**arguments)


class CallConfig(BaseModel):
    """Immutable per-call configuration supplied at provisioning time."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    prompt: str = DEFAULT_PROMPT
    first_message: str = DEFAULT_FIRST_MESSAGE
    capabilities: Tuple[Capability, ...] = ()
    personalities: Dict[str, str] = Field(default_factory=dict)
    user_chat_id: Optional[str] = None
    phone_number: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def default(cls) -> "CallConfig":
        return cls()

    @property
    def is_default(self) -> bool:
        return self.prompt == DEFAULT_PROMPT and self.first_message == DEFAULT_FIRST_MESSAGE

    def capability(self, name: str) -> Optional[Capability]:
        for capability in self.capabilities:
            if capability.name == name:
                return capability
        return None


@dataclass
class TranscriptEntry:
    speaker: str
    text: str
    interaction_count: int
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class AdaptationEvent:
    """Observable change of conversational behaviour (e.g. persona switch)."""

    kind: str
    name: str
    reason: str = ""
    interaction_count: Optional[int] = None


@dataclass
class CallSession:
    """State of one active call."""

    call_id: Optional[str] = None
    stream_id: Optional[str] = None
    state: CallState = CallState.AWAITING_STREAM
    interaction_count: int = 0
    # Insertion-ordered set of mark labels sent but not yet acknowledged
    pending_marks: Dict[str, None] = field(default_factory=dict)
    config: CallConfig = field(default_factory=CallConfig.default)
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None
    transcript: List[TranscriptEntry] = field(default_factory=list)

    @property
    def duration_seconds(self) -> int:
        if not self.started_at:
            return 0
        end = self.ended_at or utcnow()
        return max(0, round((end - self.started_at).total_seconds()))

    def add_transcript(self, speaker: str, text: str, interaction_count: int) -> TranscriptEntry:
        entry = TranscriptEntry(speaker=speaker, text=text, interaction_count=interaction_count)
        self.transcript.append(entry)
        return entry
