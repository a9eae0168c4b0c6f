"""
Discubot Common Module

Shared infrastructure: configuration, errors, retry and the LLM client.
"""

from .config import DiscubotConfig, load_config
from .errors import (
    DiscubotError,
    InputValidationError,
    ConfigurationError,
    TransientError,
    AdapterError,
    NotFoundError,
    AnalysisError,
    MalformedOutputError,
    TaskSinkError,
    ProcessingError,
)
from .llm_client import LLMClient
from .retry import retry_with_backoff

__all__ = [
    "DiscubotConfig",
    "load_config",
    "DiscubotError",
    "InputValidationError",
    "ConfigurationError",
    "TransientError",
    "AdapterError",
    "NotFoundError",
    "AnalysisError",
    "MalformedOutputError",
    "TaskSinkError",
    "ProcessingError",
    "LLMClient",
    "retry_with_backoff",
]
