"""
Provider-agnostic async LLM client.

Supports Anthropic and OpenAI with a shared text-generation interface. SDK
exceptions are translated into pipeline errors here, so callers only ever
see ``TransientError`` (retryable), ``ConfigurationError`` or
``AnalysisError``.
"""

from __future__ import annotations

import logging
from typing import Optional

import anthropic
import openai

from .errors import AnalysisError, ConfigurationError, TransientError

logger = logging.getLogger("discubot.common.llm_client")

# Both SDKs expose the same exception names
_TRANSIENT = (
    anthropic.RateLimitError,
    anthropic.APITimeoutError,
    anthropic.APIConnectionError,
    anthropic.InternalServerError,
    openai.RateLimitError,
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.InternalServerError,
)
_AUTH = (
    anthropic.AuthenticationError,
    anthropic.PermissionDeniedError,
    openai.AuthenticationError,
    openai.PermissionDeniedError,
)
_API = (anthropic.APIError, openai.APIError)


def classify_llm_error(error: Exception, provider: str) -> Exception:
    """Map an SDK exception onto a pipeline error with the right retry flag."""
    status = getattr(error, "status_code", None)
    if isinstance(error, _TRANSIENT):
        retry_after = None
        response = getattr(error, "response", None)
        if response is not None:
            try:
                retry_after = float(response.headers.get("retry-after", ""))
            except (TypeError, ValueError):
                retry_after = None
        return TransientError(
            f"{provider} request failed transiently: {error}",
            status_code=status,
            retry_after=retry_after,
            context={"provider": provider},
        )
    if isinstance(error, _AUTH):
        return ConfigurationError(
            f"{provider} rejected the API key: {error}",
            context={"provider": provider, "status_code": status},
        )
    if isinstance(error, _API):
        # Overloaded (529) and any other 5xx are worth another try
        retryable = isinstance(status, int) and status >= 500
        return AnalysisError(
            f"{provider} request failed: {error}",
            retryable=retryable,
            context={"provider": provider, "status_code": status},
        )
    return error


class LLMClient:
    """Unified async text generation client across LLM providers."""

    def __init__(
        self,
        provider: str = "anthropic",
        model: str = "",
        anthropic_api_key: Optional[str] = None,
        openai_api_key: Optional[str] = None,
    ) -> None:
        self.provider = (provider or "anthropic").lower()
        self.model = model
        self._client = None

        if self.provider == "anthropic":
            if not anthropic_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            # max_retries=0: retries are owned by retry_with_backoff
            self._client = anthropic.AsyncAnthropic(api_key=anthropic_api_key, max_retries=0)
            return

        if self.provider == "openai":
            if not openai_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            self._client = openai.AsyncOpenAI(api_key=openai_api_key, max_retries=0)
            return

        logger.warning("Unsupported LLM provider: %s", self.provider)

    @property
    def is_available(self) -> bool:
        return self._client is not None

    async def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        max_tokens: int = 1024,
        timeout: float = 60.0,
    ) -> str:
        if not self.is_available:
            raise ConfigurationError("LLM client is not available")

        try:
            if self.provider == "anthropic":
                kwargs = {}
                if system:
                    kwargs["system"] = system
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    messages=[{"role": "user", "content": prompt}],
                    timeout=timeout,
                    **kwargs,
                )
                return response.content[0].text.strip()

            messages = []
            if system:
                messages.append({"role": "system", "content": system})
            messages.append({"role": "user", "content": prompt})
            response = await self._client.chat.completions.create(
                model=self.model,
                max_tokens=max_tokens,
                messages=messages,
                timeout=timeout,
            )
            return (response.choices[0].message.content or "").strip()
        except Exception as e:
            mapped = classify_llm_error(e, self.provider)
            if mapped is e:
                raise
            raise mapped from e
