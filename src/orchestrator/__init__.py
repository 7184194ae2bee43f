"""Orchestrator.

Builds model handles, wires them to memory and retrievers as chat and
retrieval chains, and serves them to the web front-end.
"""

from orchestrator.llm import ModelFactory, ModelHandle
from orchestrator.memory import ConversationMemory, MemoryManager
from orchestrator.retrievers import (
    KnowledgeBaseRetriever,
    Retriever,
    VectorStoreRetriever,
    get_knowledge_base_retriever,
)
from orchestrator.chains import (
    ConversationChain,
    ConversationalRetrievalChain,
    RetrievalQAChain,
    get_chain,
    get_conversational_retrieval_qa_chain,
    get_retrieval_qa_chain,
)

__all__ = [
    "ModelFactory",
    "ModelHandle",
    "ConversationMemory",
    "MemoryManager",
    "KnowledgeBaseRetriever",
    "Retriever",
    "VectorStoreRetriever",
    "get_knowledge_base_retriever",
    "ConversationChain",
    "ConversationalRetrievalChain",
    "RetrievalQAChain",
    "get_chain",
    "get_conversational_retrieval_qa_chain",
    "get_retrieval_qa_chain",
]
