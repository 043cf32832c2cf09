"""
Conversation engine for the composed voice pipeline.

Wraps an OpenAI-compatible chat completions endpoint. The engine keeps the
conversation history of one call, injects the call's capability set as
``tools``, executes the tool calls the model makes and feeds their results
back, and reports personality switches as adaptation events.

A personality switch happens either through the built-in
``switch_personality`` tool (offered when the call was provisioned with
personalities) or through a ``[personality:<name>]`` prefix on a reply.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from callbridge.config.constants import LOGGER_NAME, MAX_TOOL_ROUNDS
from callbridge.errors import BackendReplyError
from callbridge.models.call_session import AdaptationEvent, CallConfig

logger = logging.getLogger(LOGGER_NAME)

SWITCH_PERSONALITY = "switch_personality"
PERSONALITY_PREFIX = re.compile(r"^\s*\[personality:\s*([\w-]+)\s*\]\s*", re.IGNORECASE)


@dataclass
class EngineReply:
    text: str
    correlation_token: int
    adaptation: Optional[AdaptationEvent] = None


class ConversationEngine:
    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        model: str,
        timeout: float = 10.0,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.model = model
        self.timeout = timeout
        self.call_id: Optional[str] = None
        self.personality: Optional[str] = None
        self.messages: List[Dict[str, Any]] = []
        self._config: Optional[CallConfig] = None
        self._session_factory = session_factory
        self._session: Optional[aiohttp.ClientSession] = None

    def start(self, config: CallConfig, call_id: Optional[str] = None) -> None:
        """Reset the history for a new call."""
        self._config = config
        self.call_id = call_id
        self.personality = None
        self.messages = [
            {"role": "system", "content": config.prompt},
            {"role": "assistant", "content": config.first_message},
        ]

    def tool_schemas(self) -> List[Dict[str, Any]]:
        if self._config is None:
            return []
        tools = [capability.to_tool_schema() for capability in self._config.capabilities]
        if self._config.personalities:
            tools.append(
                {
                    "type": "function",
                    "function": {
                        "name": SWITCH_PERSONALITY,
                        "description": "Change speaking personality to suit the caller's mood.",
                        "parameters": {
                            "type": "object",
                            "properties": {
                                "name": {
                                    "type": "string",
                                    "enum": sorted(self._config.personalities),
                                },
                                "reason": {"type": "string"},
                            },
                            "required": ["name"],
                        },
                    },
                }
            )
        return tools

    async def reply(self, text: str, correlation_token: int) -> EngineReply:
        """
        Produce the agent's reply to one caller utterance.

        Raises:
            BackendReplyError: The completion endpoint failed or is not configured
        """
        if not self.api_key:
            raise BackendReplyError("LLM_API_KEY not configured")
        if self._config is None:
            raise BackendReplyError("Conversation engine used before start()")

        self.messages.append({"role": "user", "content": text})
        adaptation: Optional[AdaptationEvent] = None

        for _ in range(MAX_TOOL_ROUNDS + 1):
            message = await self._complete()
            tool_calls = message.get("tool_calls") or []
            if not tool_calls:
                break
            self.messages.append(
                {"role": "assistant", "content": message.get("content"), "tool_calls": tool_calls}
            )
            for tool_call in tool_calls:
                result, event = await self._run_tool(tool_call, correlation_token)
                adaptation = event or adaptation
                self.messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": tool_call.get("id"),
                        "content": json.dumps(result, default=str),
                    }
                )
        else:
            logger.warning(f"[{self.call_id}] Tool call limit reached for interaction {correlation_token}")
            message = {"content": ""}

        content = (message.get("content") or "").strip()
        match = PERSONALITY_PREFIX.match(content)
        if match:
            content = content[match.end():]
            event = self._switch_personality(match.group(1), "reply prefix", correlation_token)
            adaptation = event or adaptation

        self.messages.append({"role": "assistant", "content": content})
        logger.info(f"[{self.call_id}] Engine reply for interaction {correlation_token}: {content[:80]}")
        return EngineReply(text=content, correlation_token=correlation_token, adaptation=adaptation)

    async def _complete(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": self.model, "messages": list(self.messages)}
        tools = self.tool_schemas()
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        url = self.base_url.rstrip("/") + "/chat/completions"
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        await self._ensure_session()
        try:
            async with self._session.post(
                url,
                json=payload,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                body = await response.text()
                if response.status >= 400:
                    raise BackendReplyError(
                        f"Chat completion failed ({response.status}): {body[:128]}"
                    )
                data = json.loads(body)
        except aiohttp.ClientError as e:
            raise BackendReplyError(f"Chat completion connection error: {e}") from e
        except asyncio.TimeoutError as e:
            raise BackendReplyError(f"Chat completion timed out after {self.timeout}s") from e
        except ValueError as e:
            raise BackendReplyError(f"Chat completion returned invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise BackendReplyError("Chat completion returned an unexpected body")
        choices = data.get("choices") or []
        if not choices:
            raise BackendReplyError("Chat completion returned no choices")
        return choices[0].get("message") or {}

    async def _run_tool(self, tool_call: Dict[str, Any], correlation_token: int):
        function = tool_call.get("function", {})
        name = function.get("name", "")
        try:
            arguments = json.loads(function.get("arguments") or "{}")
        except json.JSONDecodeError:
            logger.warning(f"[{self.call_id}] Invalid arguments for tool {name}")
            return {"error": "invalid arguments"}, None

        if name == SWITCH_PERSONALITY:
            event = self._switch_personality(
                arguments.get("name", ""), arguments.get("reason", ""), correlation_token
            )
            if event is None:
                return {"error": f"unknown personality: {arguments.get('name')}"}, None
            return {"personality": event.name}, event

        capability = self._config.capability(name)
        if capability is None:
            logger.warning(f"[{self.call_id}] Model requested unknown capability: {name}")
            return {"error": f"unknown capability: {name}"}, None

        logger.info(f"[{self.call_id}] Invoking capability {name} with {arguments}")
        try:
            result = await capability.invoke(arguments)
        except Exception as e:
            logger.error(f"[{self.call_id}] Capability {name} failed: {e}", exc_info=True)
            return {"error": str(e)}, None
        return result, AdaptationEvent(
            kind="function", name=name, interaction_count=correlation_token
        )

    def _switch_personality(
        self, name: str, reason: str, correlation_token: int
    ) -> Optional[AdaptationEvent]:
        personalities = self._config.personalities if self._config else {}
        if name not in personalities:
            logger.warning(f"[{self.call_id}] Ignoring switch to unknown personality: {name}")
            return None
        if name == self.personality:
            return None
        self.personality = name
        self.messages[0] = {
            "role": "system",
            "content": f"{self._config.prompt}\n\n{personalities[name]}",
        }
        logger.info(f"[{self.call_id}] Personality switched to {name} ({reason})")
        return AdaptationEvent(
            kind="personality", name=name, reason=reason, interaction_count=correlation_token
        )

    async def _ensure_session(self) -> None:
        if self._session and not self._session.closed:
            return
        factory = self._session_factory or aiohttp.ClientSession
        self._session = factory()

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
