"""
Resend Adapter

Resend's inbound webhook only says that an email arrived (``email.received``
with an id). The body has to be fetched from the Resend API, and it may not
be there yet when the webhook lands, so we wait briefly and re-fetch.

Once fetched, the email is reshaped into Mailgun's field names and handed
to the Figma adapter, which owns everything else.
"""

import asyncio
import base64
import hashlib
import hmac
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx

from ...common.errors import InputValidationError
from ...common.schemas import DiscussionStatus, DiscussionThread, ParsedDiscussion, SourceConfig
from .base import FETCH_TIMEOUT, SourceAdapter, ValidationResult
from .figma import FigmaAdapter

logger = logging.getLogger("discubot.pipeline.adapters.resend")

RESEND_API_BASE = "https://api.resend.com"

DEFAULT_FETCH_DELAY = 2.0
DEFAULT_FETCH_ATTEMPTS = 3


def resend_to_mailgun(email: Dict[str, Any]) -> Dict[str, Any]:
    """Map a Resend received-email object onto Mailgun's parsed-message fields."""
    to = email.get("to") or []
    if isinstance(to, str):
        to = [to]
    timestamp = ""
    created_at = email.get("created_at")
    if created_at:
        try:
            timestamp = str(int(datetime.fromisoformat(created_at.replace("Z", "+00:00")).timestamp()))
        except ValueError:
            timestamp = ""
    return {
        "recipient": to[0] if to else "",
        "from": email.get("from") or "",
        "subject": email.get("subject") or "",
        "body-html": email.get("html") or "",
        "body-plain": email.get("text") or "",
        "timestamp": timestamp,
    }


class ResendAdapter(SourceAdapter):
    """
    Figma notifications delivered through Resend.

    Reports the Figma source type; every capability except parsing is
    delegated to the wrapped FigmaAdapter.
    """

    def __init__(
        self,
        figma: FigmaAdapter,
        api_token: str = "",
        webhook_secret: str = "",
        fetch_delay: float = DEFAULT_FETCH_DELAY,
        fetch_attempts: int = DEFAULT_FETCH_ATTEMPTS,
        http_client: Optional[httpx.AsyncClient] = None,
        api_base: str = RESEND_API_BASE,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(http_client)
        self._figma = figma
        self._api_token = api_token
        self._webhook_secret = webhook_secret
        self._fetch_delay = fetch_delay
        self._fetch_attempts = max(1, fetch_attempts)
        self._api_base = api_base.rstrip("/")
        self._sleep = sleep
        self.status_indicators = figma.status_indicators

    @property
    def source_type(self) -> str:
        return self._figma.source_type

    async def fetch_email(self, email_id: str) -> Dict[str, Any]:
        response = await self._request(
            "GET", f"{self._api_base}/emails/receiving/{email_id}",
            headers={"Authorization": f"Bearer {self._api_token}"},
            timeout=FETCH_TIMEOUT,
        )
        self._raise_for_status(response)
        return self._json(response)

    async def parse_incoming(self, payload: Dict[str, Any]) -> ParsedDiscussion:
        if payload.get("type") != "email.received":
            raise InputValidationError(
                f"Unsupported Resend event: {payload.get('type')}",
                fields=["type"], context={"source_type": self.source_type},
            )
        email_id = (payload.get("data") or {}).get("email_id") or (payload.get("data") or {}).get("id")
        if not email_id:
            raise InputValidationError(
                "Resend event carries no email id",
                fields=["data.email_id"], context={"source_type": self.source_type},
            )

        email: Dict[str, Any] = {}
        for attempt in range(1, self._fetch_attempts + 1):
            await self._sleep(self._fetch_delay)
            email = await self.fetch_email(email_id)
            if email.get("html") or email.get("text"):
                break
            logger.info(
                "Resend email %s has no body yet (attempt %d/%d)",
                email_id, attempt, self._fetch_attempts,
            )

        mailgun_payload = resend_to_mailgun(email)
        parsed = await self._figma.parse_incoming(mailgun_payload)
        return parsed.model_copy(update={
            "metadata": {**parsed.metadata, "resend_email_id": email_id, "transport": "resend"},
        })

    async def fetch_thread(self, thread_id: str, config: SourceConfig) -> DiscussionThread:
        return await self._figma.fetch_thread(thread_id, config)

    async def post_reply(self, thread_id: str, message: str, config: SourceConfig) -> bool:
        return await self._figma.post_reply(thread_id, message, config)

    async def update_status(
        self, thread_id: str, status: DiscussionStatus, config: SourceConfig
    ) -> bool:
        return await self._figma.update_status(thread_id, status, config)

    def validate_config(self, config: SourceConfig) -> ValidationResult:
        result = self._figma.validate_config(config)
        if not self._api_token:
            result.errors.append("Resend API token is required to fetch inbound email")
            result.valid = False
        return result

    async def test_connection(self, config: SourceConfig) -> bool:
        return await self._figma.test_connection(config)

    def verify_signature(
        self,
        body: bytes,
        headers: Mapping[str, str],
        form: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """
        Verify a Svix signature (Resend webhooks).

        Signed content is ``{svix-id}.{svix-timestamp}.{body}``; the header
        may list several space-separated ``v1,<base64>`` signatures.
        """
        if not self._webhook_secret:
            return True

        msg_id = headers.get("svix-id") or ""
        timestamp = headers.get("svix-timestamp") or ""
        signatures = headers.get("svix-signature") or ""
        if not (msg_id and timestamp and signatures):
            return False

        try:
            if abs(time.time() - int(timestamp)) > 300:
                return False
        except ValueError:
            return False

        secret = self._webhook_secret
        if secret.startswith("whsec_"):
            secret = secret[len("whsec_"):]
        try:
            key = base64.b64decode(secret)
        except (ValueError, TypeError):
            return False

        signed = f"{msg_id}.{timestamp}.".encode("utf-8") + body
        expected = base64.b64encode(hmac.new(key, signed, hashlib.sha256).digest()).decode()

        for candidate in signatures.split():
            _, _, sig = candidate.partition(",")
            if sig and hmac.compare_digest(expected, sig):
                return True
        return False
