"""
Managed conversational voice backend (ElevenLabs Conversational AI).

The external service recognizes, reasons and synthesizes by itself. This
adapter only translates between line audio and the service's framing:

- line audio is forwarded as ``user_audio_chunk`` messages
- ``audio`` messages become synthesized chunks; each new service ``event_id``
  gets the next session response index and ends the previous one
- ``ping`` is answered with a ``pong`` carrying the same ``event_id``
- ``user_transcript`` / ``agent_response`` become transcript events
- ``interruption`` is raised as the backend's own barge-in signal
- ``client_tool_call`` runs the call's capability and answers with
  ``client_tool_result``

The connection is authorised through a signed URL fetched per call.
"""

import asyncio
import base64
import json
import logging
from typing import Any, Callable, Dict, Optional

import aiohttp
import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed

from callbridge.agent.base import SynthesizedChunk, VoiceBackendAdapter
from callbridge.config.constants import (
    AGENT_MESSAGE_INIT_CLIENT_DATA,
    AGENT_MESSAGE_PONG,
    AGENT_MESSAGE_TOOL_RESULT,
    AGENT_MESSAGE_USER_MESSAGE,
    LOGGER_NAME,
)
from callbridge.errors import BackendInitError
from callbridge.models.call_session import CallConfig
from callbridge.models.message_schemas import (
    AgentAudioMessage,
    AgentErrorMessage,
    AgentResponseCorrectionMessage,
    AgentResponseMessage,
    ClientToolCallMessage,
    ConversationInitiationMetadataMessage,
    InterruptionMessage,
    PingMessage,
    UserTranscriptMessage,
    parse_agent_message,
)

logger = logging.getLogger(LOGGER_NAME)

SIGNED_URL_ENDPOINT = "https://api.elevenlabs.io/v1/convai/conversation/get_signed_url"
CONNECTION_TIMEOUT = 10  # seconds


class ManagedConversationalAdapter(VoiceBackendAdapter):
    autonomous_replies = True

    def __init__(
        self,
        api_key: Optional[str],
        agent_id: Optional[str],
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        super().__init__()
        self.api_key = api_key
        self.agent_id = agent_id
        self.ws = None
        self.conversation_id: Optional[str] = None
        self._session_factory = session_factory or aiohttp.ClientSession
        self._config: Optional[CallConfig] = None
        self._recv_task: Optional[asyncio.Task] = None
        self._closing = False
        self._event_indices: Dict[int, int] = {}
        self._current_index: Optional[int] = None
        self._latest_token: Optional[int] = None

    @property
    def connected(self) -> bool:
        return self.ws is not None and not self._closing

    async def initialize(self, config: CallConfig) -> None:
        if not self.api_key or not self.agent_id:
            raise BackendInitError("ELEVENLABS_API_KEY and ELEVENLABS_AGENT_ID must be configured")
        self._config = config

        try:
            signed_url = await self._get_signed_url()
            self.ws = await asyncio.wait_for(
                websockets.connect(
                    signed_url,
                    max_size=16 * 1024 * 1024,
                    ping_interval=20,
                    ping_timeout=20,
                    close_timeout=5,
                ),
                timeout=CONNECTION_TIMEOUT,
            )
            await self.ws.send(json.dumps(self.build_initiation_message(config)))
        except (OSError, asyncio.TimeoutError, aiohttp.ClientError, websockets.WebSocketException) as e:
            logger.error(f"[{self.call_id}] Managed agent connection failed: {e}")
            if self.ws is not None:
                await self.ws.close()
                self.ws = None
            raise BackendInitError(f"Managed agent connection failed: {e}") from e

        self._initialized = True
        self._recv_task = asyncio.create_task(self._recv_loop())
        logger.info(f"[{self.call_id}] Managed agent connected")

    async def _get_signed_url(self) -> str:
        headers = {"xi-api-key": self.api_key}
        async with self._session_factory() as session:
            async with session.get(
                SIGNED_URL_ENDPOINT,
                params={"agent_id": self.agent_id},
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=CONNECTION_TIMEOUT),
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise ConnectionError(
                        f"Failed to get signed URL: {response.status} - {error_text[:128]}"
                    )
                data = await response.json()

        signed_url = data.get("signed_url")
        if not signed_url:
            raise ConnectionError("No signed_url in response")
        return signed_url

    @staticmethod
    def build_initiation_message(config: CallConfig) -> Dict[str, Any]:
        return {
            "type": AGENT_MESSAGE_INIT_CLIENT_DATA,
            "conversation_config_override": {
                "agent": {
                    "prompt": {"prompt": config.prompt},
                    "first_message": config.first_message,
                }
            },
        }

    async def send_audio(self, audio: bytes) -> None:
        if not self.connected:
            return
        message = {"user_audio_chunk": base64.b64encode(audio).decode("utf-8")}
        try:
            await self.ws.send(json.dumps(message))
        except ConnectionClosed:
            # Reported by the receive loop
            logger.debug(f"[{self.call_id}] Dropping audio, managed agent connection closed")

    async def submit_utterance(self, text: str, correlation_token: int) -> None:
        self._latest_token = correlation_token
        if not self.connected:
            logger.warning(f"[{self.call_id}] Cannot submit utterance, managed agent not connected")
            return
        await self._send({"type": AGENT_MESSAGE_USER_MESSAGE, "text": text})

    async def acknowledge_utterance(self, correlation_token: int) -> None:
        self._latest_token = correlation_token

    async def _send(self, message: Dict[str, Any]) -> None:
        try:
            await self.ws.send(json.dumps(message))
        except ConnectionClosed as e:
            logger.warning(f"[{self.call_id}] Failed to send {message.get('type')}: {e}")

    async def _recv_loop(self) -> None:
        reason = "managed agent closed the connection"
        try:
            async for raw in self.ws:
                await self.handle_message(raw)
        except ConnectionClosed as e:
            reason = f"managed agent connection lost: {e}"

        await self._finish_current()
        if not self._closing:
            logger.warning(f"[{self.call_id}] {reason}")
            await self._emit("failure", reason)

    async def handle_message(self, raw) -> None:
        """Dispatch one message received from the managed agent."""
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning(f"[{self.call_id}] Ignoring non-JSON agent message")
            return
        try:
            message = parse_agent_message(data)
        except ValidationError as e:
            logger.warning(f"[{self.call_id}] Invalid {data.get('type')} message: {e.errors()[:1]}")
            return
        if message is None:
            return

        if isinstance(message, AgentAudioMessage):
            await self._handle_audio(message)
        elif isinstance(message, PingMessage):
            await self._send({"type": AGENT_MESSAGE_PONG, "event_id": message.ping_event.event_id})
        elif isinstance(message, UserTranscriptMessage):
            text = message.user_transcription_event.user_transcript.strip()
            if text:
                await self._emit("utterance", text)
        elif isinstance(message, AgentResponseMessage):
            text = message.agent_response_event.agent_response.strip()
            if text:
                await self._emit("agent_text", text, self._latest_token)
        elif isinstance(message, AgentResponseCorrectionMessage):
            body = message.agent_response_correction_event
            logger.info(f"[{self.call_id}] Agent response truncated to: {body.corrected_agent_response}")
        elif isinstance(message, InterruptionMessage):
            logger.info(f"[{self.call_id}] Managed agent detected interruption")
            await self._emit("interruption")
            await self._finish_current()
        elif isinstance(message, ConversationInitiationMetadataMessage):
            metadata = message.conversation_initiation_metadata_event
            self.conversation_id = metadata.conversation_id
            logger.info(
                f"[{self.call_id}] Conversation started: {self.conversation_id} "
                f"(output={metadata.agent_output_audio_format}, input={metadata.user_input_audio_format})"
            )
        elif isinstance(message, ClientToolCallMessage):
            await self._handle_tool_call(message)
        elif isinstance(message, AgentErrorMessage):
            logger.error(f"[{self.call_id}] Managed agent error: {message.message or message.error}")

    async def _handle_audio(self, message: AgentAudioMessage) -> None:
        event_id = message.audio_event.event_id
        index = self._event_indices.get(event_id)
        if index is None:
            await self._finish_current()
            index = self._allocate_index()
            self._event_indices[event_id] = index
            self._current_index = index
        try:
            audio = base64.b64decode(message.audio_event.audio_base_64)
        except ValueError:
            logger.warning(f"[{self.call_id}] Dropping agent audio with invalid base64")
            return
        await self._emit_chunk(
            SynthesizedChunk(response_index=index, audio=audio, correlation_token=self._latest_token)
        )

    async def _finish_current(self) -> None:
        if self._current_index is None:
            return
        index, self._current_index = self._current_index, None
        await self._emit_chunk(SynthesizedChunk(response_index=index, final=True))

    async def _handle_tool_call(self, message: ClientToolCallMessage) -> None:
        call = message.client_tool_call
        capability = self._config.capability(call.tool_name) if self._config else None
        is_error = False
        if capability is None:
            logger.warning(f"[{self.call_id}] Agent requested unknown capability: {call.tool_name}")
            result: Any = f"unknown capability: {call.tool_name}"
            is_error = True
        else:
            try:
                result = await capability.invoke(call.parameters)
            except Exception as e:
                logger.error(f"[{self.call_id}] Capability {call.tool_name} failed: {e}", exc_info=True)
                result = str(e)
                is_error = True

        await self._send(
            {
                "type": AGENT_MESSAGE_TOOL_RESULT,
                "tool_call_id": call.tool_call_id,
                "result": result if isinstance(result, str) else json.dumps(result, default=str),
                "is_error": is_error,
            }
        )

    async def terminate(self) -> None:
        if self._closing:
            return
        self._closing = True
        if self._recv_task and not self._recv_task.done():
            self._recv_task.cancel()
            try:
                await self._recv_task
            except asyncio.CancelledError:
                pass
        if self.ws is not None:
            await self.ws.close()
            self.ws = None
        self._initialized = False
        logger.info(f"[{self.call_id}] Managed agent session terminated")
