"""Knowledge Base Gateway.

Direct access to Amazon Bedrock knowledge bases, bypassing the local
chains: listing knowledge bases, managed retrieve-and-generate, and raw
retrieval. Service errors are raised as RemoteServiceError; retry policy
belongs to the caller.
"""

import asyncio
from typing import Any, Callable, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from shared.auth import CredentialProvider
from shared.errors import RemoteServiceError
from shared.logging import get_logger
from shared.models import (
    AWSCredentials,
    Citation,
    KnowledgeBaseSummary,
    RetrievedDocument,
    RetrieveAndGenerateResult,
)

logger = get_logger(__name__)

ClientFactory = Callable[[str, str, AWSCredentials], Any]

AGENT_SERVICE = "bedrock-agent"
RUNTIME_SERVICE = "bedrock-agent-runtime"


def location_uri(location: Optional[dict[str, Any]]) -> Optional[str]:
    """Extract a URI from a Bedrock knowledge base location block."""
    if not location:
        return None

    for key in ("s3Location", "webLocation", "confluenceLocation",
                "salesforceLocation", "sharePointLocation"):
        block = location.get(key)
        if block:
            return block.get("uri") or block.get("url")
    return None


def boto3_client_factory(service: str, region: str, credentials: AWSCredentials):
    """Create a boto3 client for a Bedrock agent service."""
    return boto3.client(service, region_name=region, **credentials.client_kwargs())


def _document(raw: dict[str, Any]) -> RetrievedDocument:
    location = raw.get("location")
    metadata = dict(raw.get("metadata") or {})
    if location:
        metadata["location"] = location

    return RetrievedDocument(
        content=(raw.get("content") or {}).get("text", ""),
        metadata=metadata,
        score=raw.get("score"),
        source=location_uri(location),
    )


def _citation(raw: dict[str, Any]) -> Citation:
    part = (raw.get("generatedResponsePart") or {}).get("textResponsePart") or {}
    span = part.get("span") or {}
    return Citation(
        text=part.get("text", ""),
        span_start=span.get("start"),
        span_end=span.get("end"),
        references=[_document(ref) for ref in raw.get("retrievedReferences", [])],
    )


class KnowledgeBaseGateway:
    """
    Client for the managed knowledge base service.

    Provides methods for:
    - Listing available knowledge bases
    - Retrieve-and-generate with a remote conversation session
    - Plain retrieval with a fixed result count

    Credentials are fetched per operation; the gateway holds no session.
    """

    def __init__(
        self,
        credentials: CredentialProvider,
        region: str = "us-east-1",
        model_arn: str = "arn:aws:bedrock:us-east-1::foundation-model/anthropic.claude-v2:1",
        number_of_results: int = 5,
        client_factory: Optional[ClientFactory] = None
    ) -> None:
        """
        Initialize the gateway.

        Args:
            credentials: Source of transient credentials
            region: AWS region of the knowledge bases
            model_arn: Foundation model used for retrieve-and-generate
            number_of_results: Result count for retrieve
            client_factory: Builds service clients; defaults to boto3
        """
        self.credentials = credentials
        self.region = region
        self.model_arn = model_arn
        self.number_of_results = number_of_results
        self._client_factory = client_factory or boto3_client_factory

    async def _client(self, service: str):
        credentials = await self.credentials.fetch_session()
        return self._client_factory(service, self.region, credentials)

    async def _invoke(self, service: str, operation: str, **params: Any) -> dict[str, Any]:
        """Call one service operation in a worker thread."""
        client = await self._client(service)
        method = getattr(client, operation)

        try:
            return await asyncio.to_thread(method, **params)
        except ClientError as e:
            error = e.response.get("Error", {})
            logger.error(
                "Knowledge base request failed",
                operation=operation,
                code=error.get("Code"),
                error=error.get("Message", str(e))
            )
            raise RemoteServiceError(
                f"{operation} failed: {error.get('Message', str(e))}",
                operation=operation,
                code=error.get("Code")
            ) from e
        except BotoCoreError as e:
            logger.error("Knowledge base transport failed", operation=operation, error=str(e))
            raise RemoteServiceError(
                f"{operation} failed: {e}",
                operation=operation
            ) from e

    async def list_knowledge_bases(self) -> list[KnowledgeBaseSummary]:
        """
        List knowledge bases visible to the current credentials.

        Returns:
            Summaries in service order, across all pages
        """
        summaries: list[KnowledgeBaseSummary] = []
        params: dict[str, Any] = {}

        while True:
            response = await self._invoke(AGENT_SERVICE, "list_knowledge_bases", **params)

            for raw in response.get("knowledgeBaseSummaries", []):
                summaries.append(KnowledgeBaseSummary(
                    knowledge_base_id=raw["knowledgeBaseId"],
                    name=raw["name"],
                    description=raw.get("description"),
                    status=raw.get("status"),
                    updated_at=raw.get("updatedAt"),
                ))

            next_token = response.get("nextToken")
            if not next_token:
                break
            params = {"nextToken": next_token}

        logger.debug("Knowledge bases listed", count=len(summaries))
        return summaries

    async def retrieve_and_generate(
        self,
        session_id: Optional[str],
        knowledge_base_id: str,
        query: str
    ) -> RetrieveAndGenerateResult:
        """
        Answer a query with the managed retrieve-and-generate operation.

        Args:
            session_id: Remote session to continue; None starts a new one
            knowledge_base_id: Knowledge base to search
            query: User query

        Returns:
            Generated text, citations, and the remote session id
        """
        params: dict[str, Any] = {
            "input": {"text": query},
            "retrieveAndGenerateConfiguration": {
                "type": "KNOWLEDGE_BASE",
                "knowledgeBaseConfiguration": {
                    "knowledgeBaseId": knowledge_base_id,
                    "modelArn": self.model_arn,
                },
            },
        }
        if session_id:
            params["sessionId"] = session_id

        response = await self._invoke(RUNTIME_SERVICE, "retrieve_and_generate", **params)

        result = RetrieveAndGenerateResult(
            generated_text=(response.get("output") or {}).get("text", ""),
            citations=[_citation(c) for c in response.get("citations", [])],
            session_id=response["sessionId"],
        )

        logger.info(
            "Retrieve and generate completed",
            knowledge_base_id=knowledge_base_id,
            session_id=result.session_id,
            citations=len(result.citations)
        )
        return result

    async def retrieve(
        self,
        knowledge_base_id: str,
        query: str
    ) -> list[RetrievedDocument]:
        """
        Retrieve documents without generation.

        Returns:
            At most number_of_results documents, most relevant first
        """
        response = await self._invoke(
            RUNTIME_SERVICE,
            "retrieve",
            knowledgeBaseId=knowledge_base_id,
            retrievalQuery={"text": query},
            retrievalConfiguration={
                "vectorSearchConfiguration": {
                    "numberOfResults": self.number_of_results,
                },
            },
        )

        documents = [_document(r) for r in response.get("retrievalResults", [])]
        logger.debug(
            "Knowledge base retrieve completed",
            knowledge_base_id=knowledge_base_id,
            count=len(documents)
        )
        return documents
