"""Document retrievers.

A retriever turns a query into an ordered list of documents. Two
implementations are provided: similarity search over a LlamaIndex vector
store index, and a managed Bedrock knowledge base.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Optional

from shared.auth import CredentialProvider
from shared.config import AWSSettings
from shared.logging import get_logger
from shared.models import AWSCredentials, RetrievedDocument
from kb_client.gateway import location_uri

logger = get_logger(__name__)


def document_from_node(node_with_score) -> RetrievedDocument:
    """Convert a LlamaIndex NodeWithScore into a RetrievedDocument."""
    node = node_with_score.node
    metadata = dict(node.metadata or {})
    return RetrievedDocument(
        content=node.get_content(),
        metadata=metadata,
        score=node_with_score.score,
        source=location_uri(metadata.get("location")),
    )


class Retriever(ABC):
    """Produces documents relevant to a query."""

    @abstractmethod
    async def retrieve(
        self,
        query: str,
        k: int,
        filters: Optional[Any] = None
    ) -> list[RetrievedDocument]:
        """
        Retrieve up to k documents, most relevant first.

        Args:
            query: Self-contained query text
            k: Maximum number of documents
            filters: Backend-specific metadata filter

        Returns:
            A new list of documents for every call
        """
        pass


class VectorStoreRetriever(Retriever):
    """Similarity search over a LlamaIndex VectorStoreIndex."""

    def __init__(self, index) -> None:
        """
        Args:
            index: A llama_index.core.VectorStoreIndex
        """
        self.index = index

    async def retrieve(
        self,
        query: str,
        k: int,
        filters: Optional[Any] = None
    ) -> list[RetrievedDocument]:
        retriever = self.index.as_retriever(similarity_top_k=k, filters=filters)
        nodes = await retriever.aretrieve(query)

        logger.debug("Vector store search completed", k=k, count=len(nodes))
        return [document_from_node(n) for n in nodes]


class KnowledgeBaseRetriever(Retriever):
    """Retrieval from a Bedrock knowledge base via LlamaIndex."""

    def __init__(
        self,
        knowledge_base_id: str,
        region: str,
        credentials: AWSCredentials
    ) -> None:
        self.knowledge_base_id = knowledge_base_id
        self.region = region
        self.credentials = credentials

    def _build(self, k: int, filters: Optional[dict[str, Any]]):
        from llama_index.retrievers.bedrock import AmazonKnowledgeBasesRetriever

        search_config: dict[str, Any] = {"numberOfResults": k}
        if filters:
            search_config["filter"] = filters

        return AmazonKnowledgeBasesRetriever(
            knowledge_base_id=self.knowledge_base_id,
            retrieval_config={"vectorSearchConfiguration": search_config},
            region_name=self.region,
            **self.credentials.client_kwargs(),
        )

    def _retrieve(self, query: str, k: int, filters: Optional[dict[str, Any]]):
        return self._build(k, filters).retrieve(query)

    async def retrieve(
        self,
        query: str,
        k: int,
        filters: Optional[dict[str, Any]] = None
    ) -> list[RetrievedDocument]:
        nodes = await asyncio.to_thread(self._retrieve, query, k, filters)

        logger.debug(
            "Knowledge base retrieval completed",
            knowledge_base_id=self.knowledge_base_id,
            k=k,
            count=len(nodes)
        )
        return [document_from_node(n) for n in nodes]


async def get_knowledge_base_retriever(
    knowledge_base_id: str,
    credentials: CredentialProvider,
    aws: AWSSettings
) -> KnowledgeBaseRetriever:
    """
    Build a retriever bound to one knowledge base.

    Raises:
        AuthError: If credential acquisition fails
    """
    session = await credentials.fetch_session()
    return KnowledgeBaseRetriever(knowledge_base_id, aws.region, session)
