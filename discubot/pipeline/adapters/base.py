"""
Base Adapter

Abstract base class for discussion sources. Every source (chat, design
comments, inbound email) implements the same capability set so the
processor never branches on source type.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from ...common.errors import AdapterError, NotFoundError, TransientError
from ...common.schemas import (
    DiscussionStatus,
    DiscussionThread,
    ParsedDiscussion,
    SourceConfig,
)

logger = logging.getLogger("discubot.pipeline.adapters")

# Short timeouts for fire-and-forget calls, longer for thread fetches
REPLY_TIMEOUT = 5.0
FETCH_TIMEOUT = 15.0

DEFAULT_TEAM = "default"


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def split_thread_id(thread_id: str) -> Tuple[str, Optional[str]]:
    """
    Split ``<primaryId>:<subId>`` into its parts.

    The primary id never contains a colon, so the first colon is the
    separator. An empty or missing sub-id comes back as None.
    """
    primary, _, sub = (thread_id or "").partition(":")
    return primary, (sub or None)


def join_thread_id(primary: str, sub: Optional[str]) -> str:
    return f"{primary}:{sub or ''}"


class SourceAdapter(ABC):
    """
    Abstract base class for discussion sources.

    Each adapter must implement:
    - parse_incoming: Convert a raw webhook payload to a ParsedDiscussion
    - fetch_thread: Load the full thread from the source API
    - post_reply / update_status: Best-effort acknowledgement back to the source
    - validate_config / test_connection: Config checks
    - verify_signature: Webhook authenticity
    """

    source_type: str = ""

    # DiscussionStatus -> source-specific indicator
    status_indicators: Mapping[DiscussionStatus, str] = {}

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize adapter.

        Args:
            http_client: Shared client; one is created lazily when omitted
        """
        self._http = http_client

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient()
        return self._http

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()

    @abstractmethod
    async def parse_incoming(self, payload: Dict[str, Any]) -> ParsedDiscussion:
        """
        Parse a webhook payload.

        Raises:
            InputValidationError: payload lacks a body or a resolvable team
        """

    @abstractmethod
    async def fetch_thread(self, thread_id: str, config: SourceConfig) -> DiscussionThread:
        """Load root message and replies for ``<primaryId>:<subId>``."""

    @abstractmethod
    async def post_reply(self, thread_id: str, message: str, config: SourceConfig) -> bool:
        """Post a reply. Returns False instead of raising on remote failure."""

    @abstractmethod
    async def update_status(
        self, thread_id: str, status: DiscussionStatus, config: SourceConfig
    ) -> bool:
        """Show ``status`` on the source thread. Returns False on failure."""

    @abstractmethod
    def validate_config(self, config: SourceConfig) -> ValidationResult:
        """Structural config checks, no network."""

    @abstractmethod
    async def test_connection(self, config: SourceConfig) -> bool:
        """One live round trip with the configured token."""

    @abstractmethod
    def verify_signature(
        self,
        body: bytes,
        headers: Mapping[str, str],
        form: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """
        Verify the webhook signature.

        Args:
            body: Raw request body
            headers: Request headers (case-insensitive mapping)
            form: Parsed form fields, for sources that sign inside the body
        """

    def ignore_reason(self, payload: Dict[str, Any]) -> Optional[str]:
        """
        Why a well-formed event should be acknowledged but not processed
        (bot echoes, edits, joins). None means process it.
        """
        return None

    def is_url_verification(self, payload: Dict[str, Any]) -> bool:
        """Check if the request is a subscription handshake"""
        return False

    def get_challenge(self, payload: Dict[str, Any]) -> Optional[str]:
        """Get challenge for a subscription handshake"""
        return None

    def indicator_for(self, status: DiscussionStatus) -> Optional[str]:
        return self.status_indicators.get(DiscussionStatus(status))

    def _validate_common(self, config: SourceConfig) -> ValidationResult:
        result = ValidationResult(valid=True)
        if config.source_type != self.source_type:
            result.errors.append(
                f"Config source type '{config.source_type}' does not match adapter '{self.source_type}'"
            )
        if not config.api_token:
            result.errors.append("API token is required")
        if not config.notion_token:
            result.errors.append("Notion token is required")
        if not config.notion_database_id:
            result.errors.append("Notion database ID is required")
        if config.ai_enabled and not config.anthropic_api_key:
            result.warnings.append("No per-config Anthropic key; the server-wide key will be used")
        return result

    def _raise_for_status(self, response: httpx.Response, thread_id: Optional[str] = None) -> None:
        """Turn an HTTP error response into an AdapterError with the right retry flag"""
        status = response.status_code
        if status < 400:
            return
        detail = response.text[:200]
        if status == 404:
            raise NotFoundError(
                f"{self.source_type} resource not found: {detail}",
                source_type=self.source_type, thread_id=thread_id,
            )
        if status == 429:
            retry_after = None
            try:
                retry_after = float(response.headers.get("retry-after", ""))
            except ValueError:
                pass
            raise TransientError(
                f"{self.source_type} rate limited the request",
                status_code=status, retry_after=retry_after,
                context={"source_type": self.source_type, "thread_id": thread_id},
            )
        raise AdapterError(
            f"{self.source_type} API error {status}: {detail}",
            source_type=self.source_type, thread_id=thread_id,
            status_code=status, retryable=status >= 500,
        )

    def _json(self, response: httpx.Response, thread_id: Optional[str] = None) -> Dict[str, Any]:
        """Decode a JSON object body; anything else is a non-retryable AdapterError"""
        try:
            data = response.json()
        except ValueError as e:
            raise AdapterError(
                f"{self.source_type} returned a non-JSON body: {response.text[:200]}",
                source_type=self.source_type, thread_id=thread_id,
                status_code=response.status_code, retryable=False,
            ) from e
        if not isinstance(data, dict):
            raise AdapterError(
                f"{self.source_type} returned an unexpected body of type {type(data).__name__}",
                source_type=self.source_type, thread_id=thread_id,
                status_code=response.status_code, retryable=False,
            )
        return data

    async def _request(
        self,
        method: str,
        url: str,
        *,
        thread_id: Optional[str] = None,
        timeout: float = FETCH_TIMEOUT,
        **kwargs,
    ) -> httpx.Response:
        """Send a request; transport failures and timeouts are retryable."""
        try:
            return await self.http.request(method, url, timeout=timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientError(
                f"{self.source_type} request timed out: {e}",
                context={"source_type": self.source_type, "thread_id": thread_id},
            ) from e
        except httpx.TransportError as e:
            raise TransientError(
                f"{self.source_type} connection failed: {e}",
                context={"source_type": self.source_type, "thread_id": thread_id},
            ) from e
