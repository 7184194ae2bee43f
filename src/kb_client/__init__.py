"""Knowledge Base Client - direct managed-service queries.

Lists Bedrock knowledge bases and runs retrieve / retrieve-and-generate
against them without going through the local chains.
"""

from kb_client.gateway import KnowledgeBaseGateway

__all__ = [
    "KnowledgeBaseGateway",
]
