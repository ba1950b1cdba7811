"""
Document signals for the concept graph patch stage.

A bounded sample of chunks is scanned for section breadth, lexical diversity
and code density; the resulting scales widen the patch coverage budgets for
broad or dense material.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from src.pipeline.adaptive import AdaptiveSignals, clamp_float_ceiling
from src.pipeline.primitives import chunk_meta, int_from_any, string_from_any

SAMPLE_MAX_CHUNKS = 80
SAMPLE_MAX_CHARS = 120000
MAX_UNIQUE_TOKENS = 8000
MAX_SECTION_SAMPLE = 200

_CODE_PREFIXES = ("//", "/*", "*")
_CODE_DECL_PREFIXES = ("template ", "class ", "struct ")
_CODE_MARKERS = ("#include", "#define", "::", "->", "operator")


@dataclass
class PatchDocSignals:
    sample_chunks: int = 0
    sample_chars: int = 0

    unique_sections: int = 0
    section_depth_max: int = 0
    section_depth_avg: float = 0.0

    token_count: int = 0
    unique_token_count: int = 0
    lexical_diversity: float = 0.0

    code_line_ratio: float = 0.0
    symbol_density: float = 0.0

    def to_meta(self) -> dict[str, Any]:
        return {
            "sample_chunks": self.sample_chunks,
            "sample_chars": self.sample_chars,
            "unique_sections": self.unique_sections,
            "section_depth_max": self.section_depth_max,
            "section_depth_avg": round(self.section_depth_avg, 3),
            "lexical_diversity": round(self.lexical_diversity, 3),
            "code_line_ratio": round(self.code_line_ratio, 3),
            "symbol_density": round(self.symbol_density, 3),
        }


def section_depth_from_label(label: str) -> int:
    """Depth from a numbered label: "2.3.1 Foo" is 3, anything else is 1."""
    raw = (label or "").strip()
    if not raw:
        return 1
    head = raw.split(None, 1)[0]
    if "." in head:
        return len(head.split("."))
    return 1


def normalize_token(tok: str) -> str:
    tok = (tok or "").strip()
    tok = tok.strip("".join(ch for ch in set(tok) if not ch.isalnum() and ch not in "_:"))
    return tok.lower()


def is_code_line(line: str) -> bool:
    s = line.strip()
    if not s:
        return False
    if s.startswith(_CODE_PREFIXES) or s.startswith(_CODE_DECL_PREFIXES):
        return True
    if any(ch in s for ch in "{};"):
        return True
    return any(m in s for m in _CODE_MARKERS)


def compute_patch_doc_signals(chunks: list[Any]) -> PatchDocSignals:
    """Scan every ``step``-th chunk until the chunk or character budget runs out."""
    out = PatchDocSignals()
    if not chunks:
        return out

    step = max(math.ceil(len(chunks) / SAMPLE_MAX_CHUNKS), 1)
    sections: set[str] = set()
    tokens: set[str] = set()
    depth_sum = depth_count = 0
    code_lines = total_lines = 0
    symbol_chars = total_chars = 0
    total_tokens = 0

    for ch in chunks[::step]:
        if ch is None:
            continue
        out.sample_chunks += 1

        meta = chunk_meta(ch)
        sec = string_from_any(meta.get("section_path")).strip() or string_from_any(meta.get("section_title")).strip()
        if sec and len(sections) < MAX_SECTION_SAMPLE:
            sections.add(sec)
            depth = int_from_any(meta.get("section_depth"), 0)
            if depth <= 0:
                depth = section_depth_from_label(sec)
            out.section_depth_max = max(out.section_depth_max, depth)
            depth_sum += depth
            depth_count += 1

        text = ch.text or ""
        if not text:
            continue
        remaining = SAMPLE_MAX_CHARS - out.sample_chars
        if remaining <= 0:
            break
        text = text[:remaining]
        out.sample_chars += len(text)

        for line in text.split("\n"):
            if not line.strip():
                continue
            total_lines += 1
            if is_code_line(line):
                code_lines += 1

        for c in text:
            if c.isspace():
                continue
            total_chars += 1
            if not c.isalnum():
                symbol_chars += 1

        for tok in text.split():
            total_tokens += 1
            if len(tokens) < MAX_UNIQUE_TOKENS:
                norm = normalize_token(tok)
                if norm:
                    tokens.add(norm)

        if out.sample_chars >= SAMPLE_MAX_CHARS:
            break

    out.unique_sections = len(sections)
    if depth_count:
        out.section_depth_avg = depth_sum / depth_count
    out.token_count = total_tokens
    out.unique_token_count = len(tokens)
    if total_tokens:
        out.lexical_diversity = len(tokens) / total_tokens
    if total_lines:
        out.code_line_ratio = code_lines / total_lines
    if total_chars:
        out.symbol_density = symbol_chars / total_chars
    return out


def patch_breadth_scale(signals: AdaptiveSignals, doc: PatchDocSignals) -> float:
    breadth = max(signals.section_count, doc.unique_sections)
    scale = 1.0
    if breadth >= 50:
        scale += 0.45
    elif breadth >= 35:
        scale += 0.35
    elif breadth >= 20:
        scale += 0.25
    elif breadth >= 10:
        scale += 0.15

    if doc.section_depth_max >= 4:
        scale += 0.2
    elif doc.section_depth_max >= 3:
        scale += 0.1

    if signals.file_count >= 4:
        scale += 0.15
    elif signals.file_count >= 2:
        scale += 0.1

    if signals.page_count >= 800:
        scale += 0.2
    elif signals.page_count >= 400:
        scale += 0.1
    return clamp_float_ceiling(scale, 1.0, 2.2)


def patch_complexity_scale(doc: PatchDocSignals) -> float:
    scale = 1.0
    if doc.lexical_diversity >= 0.35:
        scale += 0.2
    elif doc.lexical_diversity >= 0.25:
        scale += 0.12

    if doc.code_line_ratio >= 0.35:
        scale += 0.3
    elif doc.code_line_ratio >= 0.2:
        scale += 0.2
    elif doc.code_line_ratio >= 0.12:
        scale += 0.1

    if doc.symbol_density >= 0.2:
        scale += 0.2
    elif doc.symbol_density >= 0.12:
        scale += 0.1
    return clamp_float_ceiling(scale, 1.0, 2.0)


def scale_ceiling(base: int, scale: float, max_scale: float) -> int:
    """Raise a positive ceiling by ``min(scale, max_scale)``; never lowers it."""
    if base <= 0 or scale <= 1.0:
        return base
    adj = min(scale, max(max_scale, 1.0))
    return max(round(base * adj), base)
