"""
Cross-document section graph.

Groups chunks into sections by (file, section_path), gives each section a
vector and links similar sections in different files. The JSON rendering is
handed to the inventory and alignment prompts so they can see where two
documents talk about the same thing.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from loguru import logger

from src.integrations.llm_client import LLMClient
from src.pipeline.errors import PipelineError
from src.pipeline.primitives import chunk_meta, int_from_any, shorten, string_from_any
from src.semantic.vectors import cosine_sim, decode_embedding, mean_vector

DEFAULT_MIN_SCORE = 0.78
DEFAULT_TOP_K = 3
MAX_SECTIONS = 80
SUMMARY_CHUNKS = 3
SUMMARY_CHUNK_CHARS = 600
MIN_CHUNKS_FOR_MEAN = 3


@dataclass
class SectionNode:
    id: str
    file_id: UUID
    file_name: str = ""
    section_path: str = ""
    title: str = ""
    depth: int = 0
    chunk_ids: list[UUID] = field(default_factory=list)
    summary: str = ""
    vector: list[float] | None = None


@dataclass
class SectionEdge:
    from_id: str
    to_id: str
    score: float


def group_sections(files: Iterable[Any], chunks: Iterable[Any], max_sections: int = MAX_SECTIONS) -> list[SectionNode]:
    """Sections keyed by ``<file_id>|<section_path>``, with a summary built from their first chunks."""
    names = {f.id: (f.original_name or "").strip() for f in files or [] if f is not None}
    nodes: dict[str, SectionNode] = {}
    chunk_by_id: dict[UUID, Any] = {}
    for ch in chunks or []:
        if ch is None:
            continue
        chunk_by_id[ch.id] = ch
        meta = chunk_meta(ch)
        path = string_from_any(meta.get("section_path")).strip()
        title = string_from_any(meta.get("section_title")).strip()
        depth = int_from_any(meta.get("section_depth"), 0)
        if not path and not title:
            title = "Document"
        key = f"{ch.material_file_id}|{path}"
        node = nodes.get(key)
        if node is None:
            node = SectionNode(
                id=key,
                file_id=ch.material_file_id,
                file_name=names.get(ch.material_file_id, ""),
                section_path=path,
                title=title,
                depth=depth,
            )
            nodes[key] = node
        if ch.id not in node.chunk_ids:
            node.chunk_ids.append(ch.id)
        if not node.title and title:
            node.title = title
        if not node.depth and depth:
            node.depth = depth

    sections = sorted(nodes.values(), key=lambda s: s.id)
    if max_sections > 0 and len(sections) > max_sections:
        sections.sort(key=lambda s: (-len(s.chunk_ids), s.id))
        sections = sections[:max_sections]

    for s in sections:
        s.chunk_ids.sort(key=lambda cid: int(chunk_by_id[cid].index or 0))
        texts = [shorten(chunk_by_id[cid].text, SUMMARY_CHUNK_CHARS) for cid in s.chunk_ids[:SUMMARY_CHUNKS]]
        s.summary = "\n".join(t for t in texts if t).strip()
        embeddings = [e for e in (decode_embedding(chunk_by_id[cid].embedding) for cid in s.chunk_ids) if e]
        if len(embeddings) >= MIN_CHUNKS_FOR_MEAN:
            s.vector = mean_vector(embeddings)
    return sections


def link_sections(sections: list[SectionNode], min_score: float, top_k: int) -> list[SectionEdge]:
    """Top-K most similar sections from other files, above ``min_score``."""
    top_k = top_k if top_k > 0 else DEFAULT_TOP_K
    edges: list[SectionEdge] = []
    for s in sections:
        if not s.vector:
            continue
        candidates = []
        for other in sections:
            if other is s or other.file_id == s.file_id or not other.vector:
                continue
            score = cosine_sim(s.vector, other.vector)
            if score >= min_score:
                candidates.append((score, other.id))
        candidates.sort(key=lambda t: (-t[0], t[1]))
        edges.extend(SectionEdge(s.id, oid, score) for score, oid in candidates[:top_k])
    return edges


def render_section_graph(sections: list[SectionNode], edges: list[SectionEdge]) -> str:
    """JSON for prompts; empty when there are no cross-file edges."""
    if not edges:
        return ""
    payload = {
        "sections": [
            {
                "id": s.id,
                "file_id": str(s.file_id),
                "file_name": s.file_name,
                "section_path": s.section_path,
                "title": s.title,
                "chunk_count": len(s.chunk_ids),
                "summary": shorten(s.summary, 800),
            }
            for s in sections
        ],
        "edges": [{"from": e.from_id, "to": e.to_id, "score": round(e.score, 4)} for e in edges],
    }
    return json.dumps(payload, ensure_ascii=False)


async def build_cross_doc_section_graph(
    llm: LLMClient | None,
    files: list[Any],
    chunks: list[Any],
    min_score: float = DEFAULT_MIN_SCORE,
    top_k: int = DEFAULT_TOP_K,
) -> tuple[str, list[SectionNode]]:
    """
    Build the section graph.

    Sections without enough chunk embeddings get their summary embedded; an
    embedding failure only leaves those sections unlinked.

    Returns:
        (graph JSON or "", sections)
    """
    if not files or not chunks:
        return "", []
    sections = group_sections(files, chunks)
    pending = [s for s in sections if not s.vector and s.summary]
    if pending and llm is not None:
        try:
            vectors = await llm.embed([s.summary for s in pending])
        except PipelineError as e:
            logger.warning(f"Section summary embedding failed (sections left unlinked): {e}")
            vectors = []
        if len(vectors) == len(pending):
            for s, v in zip(pending, vectors):
                s.vector = list(v) if v else None
    edges = link_sections(sections, min_score, top_k)
    logger.debug(f"Section graph: {len(sections)} sections, {len(edges)} cross-file edges")
    return render_section_graph(sections, edges), sections
