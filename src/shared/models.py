"""Core data models for the Bedrock chat core.

This module defines the data structures passed between the credential
providers, the orchestrators and the knowledge base client.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class AWSCredentials(BaseModel):
    """Transient AWS credentials obtained from a session provider."""
    model_config = ConfigDict(frozen=True)

    access_key_id: str
    secret_access_key: str
    session_token: Optional[str] = None
    expiration: Optional[datetime] = None

    def client_kwargs(self) -> dict[str, Optional[str]]:
        """Keyword arguments accepted by boto3 clients and LlamaIndex AWS wrappers."""
        return {
            "aws_access_key_id": self.access_key_id,
            "aws_secret_access_key": self.secret_access_key,
            "aws_session_token": self.session_token,
        }


class SamplingParameters(BaseModel):
    """Sampling configuration sent with every inference request."""
    model_config = ConfigDict(frozen=True)

    max_tokens: int = Field(default=4096, gt=0)
    temperature: float = Field(default=0.8, ge=0, le=1)
    top_p: float = Field(default=0.32, ge=0, le=1)
    top_k: int = Field(default=175, ge=0)
    stop_sequences: tuple[str, ...] = Field(default_factory=tuple)


class ConversationTurn(BaseModel):
    """One completed (input, output) exchange."""
    model_config = ConfigDict(frozen=True)

    input: str
    output: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class RetrievedDocument(BaseModel):
    """A document returned by a retriever or the knowledge base service."""
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    score: Optional[float] = None
    source: Optional[str] = Field(default=None, description="Location URI of the document")


class KnowledgeBaseSummary(BaseModel):
    """Summary of a managed knowledge base."""
    knowledge_base_id: str
    name: str
    description: Optional[str] = None
    status: Optional[str] = None
    updated_at: Optional[datetime] = None


class Citation(BaseModel):
    """A span of generated text and the documents backing it."""
    text: str = ""
    span_start: Optional[int] = None
    span_end: Optional[int] = None
    references: list[RetrievedDocument] = Field(default_factory=list)


class RetrieveAndGenerateResult(BaseModel):
    """Answer produced by the managed retrieve-and-generate operation."""
    generated_text: str
    citations: list[Citation] = Field(default_factory=list)
    session_id: str
