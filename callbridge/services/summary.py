"""Call summary produced from the transcript when a call ends."""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, Union

from callbridge.config.constants import SPEAKER_AI, SPEAKER_USER
from callbridge.models.call_session import TranscriptEntry


@dataclass
class CallSummary:
    summary: str
    total_messages: int = 0
    user_messages: int = 0
    ai_messages: int = 0
    duration_seconds: int = 0
    conversation_turns: int = 0

    @property
    def analysis(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("summary")
        return data


def _speaker(entry: Union[TranscriptEntry, Dict[str, Any]]) -> str:
    if isinstance(entry, dict):
        return entry.get("speaker", "")
    return entry.speaker


def summarize_call(
    transcript: Iterable[Union[TranscriptEntry, Dict[str, Any]]], duration_seconds: int
) -> CallSummary:
    """
    Count the messages of a finished call and describe it in one line.

    Accepts in-memory transcript entries or rows read back from the call store.
    """
    entries = list(transcript)
    if not entries:
        return CallSummary(summary="No conversation recorded", duration_seconds=duration_seconds)

    user_messages = sum(1 for entry in entries if _speaker(entry) == SPEAKER_USER)
    ai_messages = sum(1 for entry in entries if _speaker(entry) == SPEAKER_AI)
    minutes = round(duration_seconds / 60)
    return CallSummary(
        summary=(
            f"Call completed with {len(entries)} messages over {minutes} minutes. "
            f"User spoke {user_messages} times, AI responded {ai_messages} times."
        ),
        total_messages=len(entries),
        user_messages=user_messages,
        ai_messages=ai_messages,
        duration_seconds=duration_seconds,
        conversation_turns=max(user_messages, ai_messages),
    )
