"""
Chunk excerpt rendering for prompts.

Every excerpt line starts with ``[chunk_id=<uuid>]`` so the model can cite
the chunks it used. Builders return the rendered text plus the chunk IDs that
made it in, in render order.
"""

from __future__ import annotations

import json
from collections import defaultdict
from collections.abc import Iterable, Sequence
from typing import Any
from uuid import UUID

from src.pipeline.primitives import (
    chunk_meta,
    is_unextractable_chunk,
    shorten,
    string_from_any,
    string_list_from_any,
)

DEFAULT_PER_FILE = 12
DEFAULT_MAX_CHARS = 700
ACTIVITY_MAX_LINES = 12
TABLE_PREVIEW_CHARS = 180


def _usable(chunk: Any) -> bool:
    if chunk is None or getattr(chunk, "material_file_id", None) is None:
        return False
    if is_unextractable_chunk(chunk):
        return False
    return bool((chunk.text or "").strip())


def group_chunks_by_file(chunks: Iterable[Any]) -> dict[UUID, list[Any]]:
    """Usable chunks grouped by file, each group sorted by chunk index."""
    by_file: dict[UUID, list[Any]] = defaultdict(list)
    for ch in chunks or []:
        if _usable(ch):
            by_file[ch.material_file_id].append(ch)
    for arr in by_file.values():
        arr.sort(key=lambda c: c.index)
    return dict(by_file)


def stratified_indices(n: int, k: int) -> list[int]:
    """``k`` evenly spaced indices over ``range(n)``."""
    if n <= 0 or k <= 0:
        return []
    k = min(k, n)
    step = n / k
    return [min(max(int(i * step), 0), n - 1) for i in range(k)]


def enriched_chunk_line(chunk: Any, max_chars: int) -> str:
    """One excerpt line with section, formula and table annotations."""
    if chunk is None or getattr(chunk, "id", None) is None:
        return ""
    txt = shorten(chunk.text or "", max_chars)
    if not txt:
        return ""
    meta = chunk_meta(chunk)
    section = string_from_any(meta.get("section_path")).strip()
    if section:
        txt = f"[section={section}] {txt}"
    formulas = string_list_from_any(meta.get("formula_latex"))
    if formulas:
        txt += " | formulas: " + "; ".join(formulas)
    symbolic = string_list_from_any(meta.get("formula_symbolic"))
    if symbolic:
        txt += " | symbolic: " + "; ".join(symbolic)
    table = meta.get("table_json")
    if table is not None:
        raw = json.dumps(table, ensure_ascii=False)
        if raw:
            txt += " | table: " + shorten(raw, TABLE_PREVIEW_CHARS)
    return f"[chunk_id={chunk.id}] {txt}"


def _plain_line(chunk: Any, max_chars: int) -> str:
    txt = shorten(chunk.text or "", max_chars)
    if not txt:
        return ""
    return f"[chunk_id={chunk.id}] {txt}"


def build_stratified_excerpts(
    chunks: Iterable[Any],
    per_file: int = DEFAULT_PER_FILE,
    max_chars: int = DEFAULT_MAX_CHARS,
    max_lines: int = 0,
    max_total_chars: int = 0,
    file_order: Sequence[UUID] | None = None,
    enriched: bool = True,
) -> tuple[str, list[UUID]]:
    """
    Render evenly spaced excerpts from each file.

    Files are visited by ID (or ``file_order`` when given); a blank line
    separates files. ``max_lines`` is a budget across all files and emission
    stops at the first line that would push the text past ``max_total_chars``.

    Args:
        chunks: Material chunks (unusable ones are skipped).
        per_file: Excerpts taken per file.
        max_chars: Per-line text cap.
        max_lines: Global line budget (0 = unlimited).
        max_total_chars: Global character budget (0 = unlimited).
        file_order: Optional explicit file visiting order.
        enriched: Annotate lines with section/formula/table metadata.

    Returns:
        (excerpt text, chunk IDs in render order)
    """
    if per_file <= 0:
        per_file = DEFAULT_PER_FILE
    if max_chars <= 0:
        max_chars = DEFAULT_MAX_CHARS
    render = enriched_chunk_line if enriched else _plain_line

    by_file = group_chunks_by_file(chunks)
    if file_order:
        order = [fid for fid in file_order if fid in by_file]
    else:
        order = sorted(by_file, key=str)

    parts: list[str] = []
    size = 0
    lines_used = 0
    ids: list[UUID] = []
    stop = False
    for fid in order:
        arr = by_file[fid]
        k = min(per_file, len(arr))
        if max_lines > 0:
            remaining = max_lines - lines_used
            if remaining <= 0:
                break
            k = min(k, remaining)
        for idx in stratified_indices(len(arr), k):
            ch = arr[idx]
            line = render(ch, max_chars)
            if not line:
                continue
            line += "\n"
            if max_total_chars > 0 and size + len(line) > max_total_chars:
                stop = True
                break
            parts.append(line)
            size += len(line)
            ids.append(ch.id)
            lines_used += 1
            if max_lines > 0 and lines_used >= max_lines:
                stop = True
                break
        if stop:
            break
        parts.append("\n")
        size += 1
        if max_total_chars > 0 and size >= max_total_chars:
            break
    return "".join(parts).strip(), ids


def render_excerpts_by_ids(
    chunk_by_id: dict[UUID, Any],
    ids: Iterable[UUID],
    max_chars: int = DEFAULT_MAX_CHARS,
    max_total_chars: int = 0,
) -> tuple[str, list[UUID]]:
    """Render chunks in the given ID order, deduped, stopping at the budget."""
    if max_chars <= 0:
        max_chars = DEFAULT_MAX_CHARS
    parts: list[str] = []
    size = 0
    out: list[UUID] = []
    seen: set[UUID] = set()
    for cid in ids or []:
        if cid is None or cid in seen:
            continue
        seen.add(cid)
        ch = chunk_by_id.get(cid)
        if ch is None or is_unextractable_chunk(ch):
            continue
        line = _plain_line(ch, max_chars)
        if not line:
            continue
        line += "\n"
        if max_total_chars > 0 and size + len(line) > max_total_chars:
            break
        parts.append(line)
        size += len(line)
        out.append(cid)
    return "".join(parts).strip(), out


def build_activity_excerpts(
    chunk_by_id: dict[UUID, Any],
    ids: Iterable[UUID],
    max_lines: int = ACTIVITY_MAX_LINES,
    max_chars: int = DEFAULT_MAX_CHARS,
) -> str:
    """Excerpts for activity generation: retrieval order, at most ``max_lines``."""
    if max_lines <= 0:
        max_lines = ACTIVITY_MAX_LINES
    if max_chars <= 0:
        max_chars = DEFAULT_MAX_CHARS
    lines: list[str] = []
    seen: set[UUID] = set()
    for cid in ids or []:
        if cid is None or cid in seen:
            continue
        seen.add(cid)
        ch = chunk_by_id.get(cid)
        if ch is None:
            continue
        line = _plain_line(ch, max_chars)
        if not line:
            continue
        lines.append(line)
        if len(lines) >= max_lines:
            break
    return "\n".join(lines).strip()
