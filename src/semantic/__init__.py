"""
Semantic helpers for embedding vectors.

- decode_embedding: JSONB/JSON embedding codec
- cosine_sim / top_k_chunk_ids_by_cosine: local similarity ranking
"""

from src.semantic.vectors import (
    chunk_embeddings_by_id,
    cosine_sim,
    decode_embedding,
    mean_vector,
    top_k_chunk_ids_by_cosine,
)

__all__ = [
    "chunk_embeddings_by_id",
    "cosine_sim",
    "decode_embedding",
    "mean_vector",
    "top_k_chunk_ids_by_cosine",
]
