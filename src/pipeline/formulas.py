"""
Formula extraction for chunk metadata.

Lines that look like formulas are sent to the LLM in batches; the cleaned
LaTeX and symbolic forms are stored on the chunk as ``formula_latex`` and
``formula_symbolic`` so excerpts can show them. The whole pass is best-effort.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy.orm import Session

from src.db.repositories import MaterialRepository
from src.integrations.llm_client import LLMClient
from src.pipeline.concurrency import batched
from src.pipeline.errors import PipelineError
from src.pipeline.primitives import dedupe_strings, map_from_any, parse_uuid, shorten, string_from_any
from src.pipeline.progress import llm_timer
from src.pipeline.prompts import FORMULA_EXTRACTION, build_prompt

MAX_CANDIDATES_PER_CHUNK = 6
MAX_CANDIDATE_LINE_CHARS = 240
CANDIDATE_EXCERPT_CHARS = 800
DEFAULT_MAX_CHUNKS = 60

_FORMULA_RE = re.compile(
    r"([a-z][a-z0-9_]*\s*[=<>≈≤≥]\s*[^;]+)|([∑∫√πµλΔΩαβγ]|\\frac|\\sqrt|\\sum|\\int|\^|_\{)",
    re.IGNORECASE,
)


def detect_formula_candidates(text: str) -> list[str]:
    """Distinct formula-looking lines, at most six."""
    out: list[str] = []
    seen: set[str] = set()
    for line in (text or "").split("\n"):
        line = line.strip()
        if not line:
            continue
        line = shorten(line, MAX_CANDIDATE_LINE_CHARS)
        if not _FORMULA_RE.search(line) or line in seen:
            continue
        seen.add(line)
        out.append(line)
        if len(out) >= MAX_CANDIDATES_PER_CHUNK:
            break
    return out


def collect_formula_candidates(
    chunks: Iterable[Any], allowed_chunk_ids: set[str] | None = None, max_chunks: int = DEFAULT_MAX_CHUNKS
) -> list[dict[str, Any]]:
    max_chunks = max_chunks if max_chunks > 0 else DEFAULT_MAX_CHUNKS
    out = []
    for ch in chunks or []:
        if len(out) >= max_chunks:
            break
        if ch is None:
            continue
        cid = str(ch.id)
        if allowed_chunk_ids and cid not in allowed_chunk_ids:
            continue
        candidates = detect_formula_candidates(ch.text)
        if not candidates:
            continue
        out.append({"chunk_id": cid, "candidates": candidates, "excerpt": shorten(ch.text, CANDIDATE_EXCERPT_CHARS)})
    return out


def parse_formula_extraction(obj: dict[str, Any]) -> dict[str, dict[str, list[str]]]:
    """Map chunk_id -> {formula_latex, formula_symbolic}; chunks with no usable formulas are omitted."""
    out: dict[str, dict[str, list[str]]] = {}
    for item in map_from_any(obj).get("items") or []:
        if not isinstance(item, dict):
            continue
        cid = string_from_any(item.get("chunk_id")).strip()
        latex: list[str] = []
        symbolic: list[str] = []
        for f in item.get("formulas") or []:
            if not isinstance(f, dict):
                continue
            latex.append(string_from_any(f.get("latex")).strip())
            symbolic.append(string_from_any(f.get("symbolic")).strip())
        latex = dedupe_strings(latex)
        symbolic = dedupe_strings(symbolic)
        if not cid or (not latex and not symbolic):
            continue
        out[cid] = {"formula_latex": latex, "formula_symbolic": symbolic}
    return out


async def extract_formulas(
    llm: LLMClient,
    chunks: list[Any],
    allowed_chunk_ids: set[str] | None = None,
    batch_size: int = 24,
    max_chunks: int = DEFAULT_MAX_CHUNKS,
) -> dict[str, dict[str, list[str]]]:
    """
    Run the formula prompt over candidate chunks.

    A failing batch is logged and skipped.
    """
    candidates = collect_formula_candidates(chunks, allowed_chunk_ids, max_chunks)
    if not candidates:
        return {}
    known = {str(ch.id) for ch in chunks if ch is not None}
    updates: dict[str, dict[str, list[str]]] = {}
    for i, batch in enumerate(batched(candidates, batch_size)):
        prompt = build_prompt(FORMULA_EXTRACTION, formula_candidates_json=json.dumps({"items": batch}))
        try:
            with llm_timer("formula_extraction", {"batch": i, "chunks": len(batch)}):
                obj = await llm.generate_json(prompt.system, prompt.user, prompt.schema_name, prompt.schema)
        except PipelineError as e:
            logger.warning(f"Formula extraction batch {i} failed (skipped): {e}")
            continue
        for cid, patch in parse_formula_extraction(obj).items():
            if cid in known:
                updates[cid] = patch
    return updates


def apply_formula_updates(chunks: Iterable[Any], updates: dict[str, dict[str, list[str]]]) -> int:
    """Merge updates into the in-memory chunk metadata so later excerpts see them."""
    n = 0
    for ch in chunks or []:
        patch = updates.get(str(ch.id)) if ch is not None else None
        if not patch:
            continue
        meta = dict(ch.meta or {})
        meta.update(patch)
        ch.meta = meta
        n += 1
    return n


def persist_formula_updates(session: Session, updates: dict[str, dict[str, list[str]]]) -> int:
    repo = MaterialRepository(session)
    n = 0
    for cid, patch in sorted(updates.items()):
        chunk_id: UUID | None = parse_uuid(cid)
        if chunk_id is not None and repo.merge_chunk_meta(chunk_id, patch):
            n += 1
    return n
