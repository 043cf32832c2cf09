"""
Twilio integration: outbound call placement and webhook signature checks.

Only call creation is done through the REST API; Twilio then fetches the
TwiML from ``/incoming`` and opens the media stream on ``/connection``.
The twilio client is synchronous, so requests run in a worker thread.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from twilio.base.exceptions import TwilioException
from twilio.request_validator import RequestValidator
from twilio.rest import Client

from callbridge.config.constants import LOGGER_NAME
from callbridge.errors import ProvisioningError

logger = logging.getLogger(LOGGER_NAME)

STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]


class TwilioCallPlacer:
    def __init__(
        self,
        account_sid: Optional[str],
        auth_token: Optional[str],
        from_number: Optional[str],
        server: str,
        client_factory: Callable[[str, str], Client] = Client,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.server = server
        self._client_factory = client_factory
        self._client: Optional[Client] = None

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = self._client_factory(self.account_sid, self.auth_token)
        return self._client

    async def place_call(self, to: str) -> Dict[str, Any]:
        """
        Ask Twilio to dial ``to`` and connect the call to this service.

        Returns:
            ``sid``, ``status`` and ``to`` of the created call

        Raises:
            ProvisioningError: Twilio is not configured or rejected the request
        """
        if not self.configured:
            raise ProvisioningError("Twilio credentials or FROM_NUMBER not configured")

        try:
            call = await asyncio.to_thread(self._create_call, to)
        except TwilioException as e:
            raise ProvisioningError(f"Twilio rejected call to {to}: {e}") from e
        except OSError as e:
            raise ProvisioningError(f"Twilio request failed: {e}") from e

        logger.info(f"Placed outbound call {call.sid} to {to}")
        return {"sid": call.sid, "status": call.status, "to": to}

    def _create_call(self, to: str):
        return self.client.calls.create(
            to=to,
            from_=self.from_number,
            url=f"https://{self.server}/incoming",
            method="POST",
            status_callback=f"https://{self.server}/webhook/call-status",
            status_callback_method="POST",
            status_callback_event=STATUS_CALLBACK_EVENTS,
        )


class TwilioWebhookVerifier:
    """Checks the ``X-Twilio-Signature`` of requests Twilio sends to this service.

    Signatures are computed over the public URL Twilio called, which is
    rebuilt from the configured server name since the service usually runs
    behind a tunnel or proxy.
    """

    def __init__(self, auth_token: Optional[str], server: str):
        self.server = server
        self._validator = RequestValidator(auth_token) if auth_token else None

    @property
    def configured(self) -> bool:
        return self._validator is not None

    def public_url(self, path: str, query: str = "") -> str:
        url = f"https://{self.server}{path}"
        return f"{url}?{query}" if query else url

    def verify(self, path: str, query: str, params, signature: Optional[str]) -> bool:
        if self._validator is None:
            logger.error("Rejecting Twilio webhook: TWILIO_AUTH_TOKEN not configured")
            return False
        if not signature:
            return False
        return self._validator.validate(self.public_url(path, query), params, signature)
