"""
MODULE: Services
DESCRIPTION: Singleton container for shared infrastructure services.
             Provides centralized, lazy-initialized access to LLM, embeddings, and datastore clients.
"""

from typing import Optional

from intelgraph.util.llm_client import get_embeddings, get_llm
from intelgraph.util.neo4j_client import Neo4jClient


class Services:
    """
    Singleton container for shared infrastructure services.
    Ensures all jobs use the same clients instead of creating duplicates.
    """
    _instance: Optional["Services"] = None

    def __init__(self):
        self._llm = None
        self._embeddings = None
        self._neo4j = None
        self._store = None

    @classmethod
    def get(cls) -> "Services":
        """Returns the singleton Services instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @property
    def llm(self):
        """Lazy-initialized chat model (LLM_MODEL)."""
        if self._llm is None:
            self._llm = get_llm()
        return self._llm

    @property
    def embeddings(self):
        """Lazy-initialized Voyage embeddings client."""
        if self._embeddings is None:
            self._embeddings = get_embeddings()
        return self._embeddings

    @property
    def neo4j(self) -> Neo4jClient:
        """Lazy-initialized Neo4j client."""
        if self._neo4j is None:
            self._neo4j = Neo4jClient()
        return self._neo4j

    @property
    def store(self):
        """Document store over the shared Neo4j client."""
        if self._store is None:
            from intelgraph.util.document_store import Neo4jDocumentStore
            self._store = Neo4jDocumentStore(self.neo4j)
        return self._store

    def close(self):
        """Closes all active connections."""
        if self._neo4j is not None:
            self._neo4j.close()
            self._neo4j = None
            self._store = None


def get_services() -> Services:
    """Helper function to get the singleton Services instance."""
    return Services.get()
