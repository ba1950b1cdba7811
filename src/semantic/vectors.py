"""
Embedding vector helpers.

Chunk embeddings are stored as JSON float arrays in JSONB. These helpers decode
them, compute cosine similarity and rank chunks against a query vector.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from typing import Any

import numpy as np


def decode_embedding(raw: Any) -> list[float] | None:
    """
    Decode a stored embedding.

    Accepts a list (already decoded JSONB), a JSON string or bytes.
    ``None``, ``"null"``, ``"[]"`` and empty input all mean "missing".

    Returns:
        List of floats, or None when the embedding is missing or malformed.
    """
    if raw is None:
        return None
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="ignore")
    if isinstance(raw, str):
        s = raw.strip()
        if not s or s in ("null", "[]"):
            return None
        try:
            raw = json.loads(s)
        except json.JSONDecodeError:
            return None
    if not isinstance(raw, (list, tuple)) or not raw:
        return None
    try:
        return [float(x) for x in raw]
    except (TypeError, ValueError):
        return None


def cosine_sim(a: Sequence[float] | np.ndarray | None, b: Sequence[float] | np.ndarray | None) -> float:
    """
    Cosine similarity over the common prefix of two vectors.

    Returns 0.0 if either vector is empty or has zero norm.
    """
    if a is None or b is None:
        return 0.0
    n = min(len(a), len(b))
    if n == 0:
        return 0.0
    va = np.asarray(a[:n], dtype=np.float64)
    vb = np.asarray(b[:n], dtype=np.float64)
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))


def mean_vector(vectors: Iterable[Sequence[float]]) -> list[float] | None:
    """Element-wise mean of equal-length vectors (shorter ones are skipped)."""
    rows = [v for v in vectors if v]
    if not rows:
        return None
    dim = max(len(v) for v in rows)
    rows = [v for v in rows if len(v) == dim]
    return np.mean(np.asarray(rows, dtype=np.float64), axis=0).tolist()


def chunk_embeddings_by_id(chunks: Iterable[Any]) -> dict[str, list[float]]:
    """Map chunk ID string to decoded embedding, skipping chunks without one."""
    out: dict[str, list[float]] = {}
    for ch in chunks or []:
        if ch is None:
            continue
        emb = decode_embedding(getattr(ch, "embedding", None))
        if emb:
            out[str(ch.id)] = emb
    return out


def top_k_chunk_ids_by_cosine(
    query: Sequence[float] | None,
    embeddings: dict[str, Sequence[float]],
    k: int,
) -> list[str]:
    """
    Rank chunk IDs by cosine similarity to ``query``.

    Ties are broken by ID so the ordering is stable across runs.
    """
    if not query or not embeddings or k <= 0:
        return []
    scored = [(cosine_sim(query, emb), cid) for cid, emb in embeddings.items() if emb]
    scored.sort(key=lambda t: (-t[0], t[1]))
    return [cid for _, cid in scored[:k]]
