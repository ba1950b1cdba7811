"""
External collaborators for pipeline stages.

Modules:
- llm_client: Gemini JSON generation and embeddings
- vector_store: Pinecone vectors and namespace helpers
- graph_mirror: best-effort graph database mirror
- object_store: object deletions for saga compensation
"""
from .graph_mirror import GraphMirror, NullGraphMirror
from .llm_client import GeminiClient, LLMClient
from .object_store import ObjectStore
from .vector_store import PineconeVectorStore, VectorMatch, VectorRecord, VectorStore

__all__ = [
    "GeminiClient",
    "GraphMirror",
    "LLMClient",
    "NullGraphMirror",
    "ObjectStore",
    "PineconeVectorStore",
    "VectorMatch",
    "VectorRecord",
    "VectorStore",
]
