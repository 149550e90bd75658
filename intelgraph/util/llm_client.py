"""
MODULE: LLM Client
DESCRIPTION: Centralized client for LLM and embedding interactions.

Chat models are singletons chosen by LLM_MODEL (gemini-* -> Google GenAI,
anything else -> OpenAI). Embeddings come from Voyage AI.

All agents call the model through ainvoke_structured(), which runs the blocking
langchain call in a worker thread with a hard timeout and turns transport and
parsing problems into LLMCallError / LLMResponseError.
"""

import asyncio
import os
from typing import Any, List, Optional, Sequence, Tuple, Type, TypeVar

from dotenv import load_dotenv
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_openai import ChatOpenAI
from pydantic import BaseModel

from intelgraph.util.errors import LLMCallError, LLMResponseError

load_dotenv()

T = TypeVar("T", bound=BaseModel)

Messages = Sequence[Tuple[str, str]]


class LLMClient:
    _instance = None

    @classmethod
    def get_instance(cls) -> BaseChatModel:
        if cls._instance is None:
            model = os.getenv("LLM_MODEL", "gpt-4o-mini")

            if model.startswith("gemini"):
                if not os.getenv("GOOGLE_API_KEY"):
                    raise ValueError("GOOGLE_API_KEY not found in environment variables")
                cls._instance = ChatGoogleGenerativeAI(model=model, temperature=0.2)
            else:
                cls._instance = ChatOpenAI(model=model, temperature=0.2)
        return cls._instance

    @staticmethod
    def get_embeddings():
        """
        Returns a NEW embedding model instance (non-singleton for testing).
        """
        from langchain_voyageai import VoyageAIEmbeddings
        return VoyageAIEmbeddings(model=os.getenv("EMBEDDING_MODEL", "voyage-3"))


def get_llm() -> BaseChatModel:
    """
    Helper function to get the singleton LLM instance.
    """
    return LLMClient.get_instance()


def get_embeddings():
    """
    Helper function to get the embedding model.
    """
    return LLMClient.get_embeddings()


def structured(llm: BaseChatModel, schema: Type[T]):
    """Bind a pydantic schema to the chat model, keeping the raw reply for diagnostics."""
    return llm.with_structured_output(schema, include_raw=True)


async def ainvoke_structured(runnable, messages: Messages, timeout: float) -> Any:
    """
    Invoke a structured-output runnable off the event loop.

    Returns the parsed pydantic object. Raises LLMCallError on timeout or
    transport failure, LLMResponseError when the reply cannot be parsed.
    """
    try:
        response = await asyncio.wait_for(
            asyncio.to_thread(runnable.invoke, list(messages)),
            timeout=timeout,
        )
    except asyncio.TimeoutError as e:
        raise LLMCallError(f"LLM call timed out after {timeout}s") from e
    except (LLMCallError, LLMResponseError):
        raise
    except Exception as e:
        raise LLMCallError(f"LLM call failed: {e}") from e

    # include_raw=True returns {"raw", "parsed", "parsing_error"}
    if isinstance(response, dict):
        if response.get("parsing_error"):
            raise LLMResponseError(f"Unparseable LLM output: {response['parsing_error']}")
        parsed = response.get("parsed")
    else:
        parsed = response

    if parsed is None:
        raise LLMResponseError("LLM returned no structured content")
    return parsed


async def aembed_documents(embeddings, texts: List[str], timeout: float) -> List[Optional[List[float]]]:
    """Embed a batch of texts in one request; vectors come back in input order."""
    if not texts:
        return []
    try:
        vectors = await asyncio.wait_for(
            asyncio.to_thread(embeddings.embed_documents, list(texts)),
            timeout=timeout,
        )
    except asyncio.TimeoutError as e:
        raise LLMCallError(f"Embedding call timed out after {timeout}s") from e
    except Exception as e:
        raise LLMCallError(f"Embedding call failed: {e}") from e

    if vectors is None or len(vectors) != len(texts):
        raise LLMResponseError(
            f"Embedding provider returned {0 if vectors is None else len(vectors)} vectors for {len(texts)} texts"
        )
    return [list(v) if v else None for v in vectors]
