"""Shared utilities and base classes for the Bedrock chat core."""

from shared.models import (
    AWSCredentials,
    Citation,
    ConversationTurn,
    KnowledgeBaseSummary,
    RetrievedDocument,
    RetrieveAndGenerateResult,
    SamplingParameters,
)
from shared.config import Settings, get_settings
from shared.errors import (
    AuthError,
    ChatCoreError,
    GenerationError,
    InputValidationError,
    RemoteServiceError,
    RetrievalError,
)
from shared.logging import get_logger, setup_logging

__all__ = [
    "AWSCredentials",
    "Citation",
    "ConversationTurn",
    "KnowledgeBaseSummary",
    "RetrievedDocument",
    "RetrieveAndGenerateResult",
    "SamplingParameters",
    "Settings",
    "get_settings",
    "AuthError",
    "ChatCoreError",
    "GenerationError",
    "InputValidationError",
    "RemoteServiceError",
    "RetrievalError",
    "get_logger",
    "setup_logging",
]
