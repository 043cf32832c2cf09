"""
Capabilities provisioned with an outbound call.

A capability declared in the call request names an action, describes its
input schema and, optionally, a webhook that executes it. Invoking the
capability POSTs the arguments as JSON to the webhook and returns the JSON
(or text) answer to the conversation engine.
"""

import logging
from typing import Any, Callable, Optional

import aiohttp

from callbridge.config.constants import LOGGER_NAME
from callbridge.models.call_session import Capability, CapabilityHandler
from callbridge.models.message_schemas import CapabilitySpec

logger = logging.getLogger(LOGGER_NAME)

WEBHOOK_TIMEOUT = 8  # seconds


def webhook_handler(
    url: str, session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None
) -> CapabilityHandler:
    factory = session_factory or aiohttp.ClientSession

    async def invoke(**arguments: Any) -> Any:
        async with factory() as session:
            async with session.post(
                url, json=arguments, timeout=aiohttp.ClientTimeout(total=WEBHOOK_TIMEOUT)
            ) as response:
                response.raise_for_status()
                if response.content_type == "application/json":
                    return await response.json()
                return await response.text()

    return invoke


def build_capability(spec: CapabilitySpec) -> Capability:
    handler = webhook_handler(spec.webhook_url) if spec.webhook_url else None
    if handler is None:
        logger.info(f"Capability {spec.name} has no webhook; invocations will report an error")
    return Capability(
        name=spec.name,
        description=spec.description,
        parameters=spec.parameters,
        handler=handler,
    )
