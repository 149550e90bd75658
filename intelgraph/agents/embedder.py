"""
MODULE: Embedder
DESCRIPTION: One batched embedding request for all accepted task texts.
"""

import logging
from typing import List, Optional, Sequence

from intelgraph.util.errors import IntelGraphError
from intelgraph.util.llm_client import aembed_documents

logger = logging.getLogger(__name__)


class Embedder:
    def __init__(self, embeddings=None, timeout: float = 120.0):
        if embeddings is None:
            from intelgraph.util.services import get_services
            embeddings = get_services().embeddings
        self.embeddings = embeddings
        self.timeout = timeout

    async def embed(self, texts: Sequence[str]) -> List[Optional[List[float]]]:
        """Vectors in submission order; every entry is None if the provider fails."""
        if not texts:
            return []
        try:
            vectors = await aembed_documents(self.embeddings, list(texts), self.timeout)
        except IntelGraphError as e:
            logger.warning(f"Embedding batch of {len(texts)} failed, continuing without vectors: {e}")
            return [None] * len(texts)
        missing = sum(1 for v in vectors if v is None)
        if missing:
            logger.warning(f"{missing}/{len(texts)} texts came back without an embedding")
        return vectors
