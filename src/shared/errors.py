"""Error taxonomy shared by the orchestrators and the knowledge base client.

Every error surfaces to the caller unchanged; nothing here retries.
"""

from typing import Optional


class ChatCoreError(Exception):
    """Base exception for chat core errors."""
    pass


class AuthError(ChatCoreError):
    """Credential acquisition failed."""
    pass


class InputValidationError(ChatCoreError):
    """A required input key or prompt placeholder is missing."""

    def __init__(self, message: str, missing: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.missing = missing or []


class RetrievalError(ChatCoreError):
    """The retriever call failed."""
    pass


class GenerationError(ChatCoreError):
    """The model invocation failed."""
    pass


class RemoteServiceError(ChatCoreError):
    """The managed knowledge base service returned an error."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.code = code
