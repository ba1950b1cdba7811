"""
Small deterministic helpers shared by every stage.

Key normalization, loose JSON coercion (LLM output and JSONB metadata arrive
as untyped dicts), dedupe, hashing and timestamp formatting.
"""
from __future__ import annotations

import hashlib
import json
import math
import re
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

MAX_CONCEPT_KEY_LEN = 64

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def normalize_concept_key(s: str) -> str:
    """
    Normalize a concept key to ``[a-z0-9_]``, at most 64 chars.

    Separators (``_``, ``-``, whitespace) collapse into a single ``_``; any
    other character is dropped. Leading/trailing ``_`` are stripped.
    Idempotent: ``normalize_concept_key(normalize_concept_key(x)) == normalize_concept_key(x)``.
    """
    s = (s or "").strip().lower()
    if not s:
        return ""
    out: list[str] = []
    for ch in s:
        if ("a" <= ch <= "z") or ("0" <= ch <= "9"):
            out.append(ch)
        elif ch in "_-" or ch.isspace():
            if out and out[-1] != "_":
                out.append("_")
    key = "".join(out).strip("_")
    if len(key) > MAX_CONCEPT_KEY_LEN:
        key = key[:MAX_CONCEPT_KEY_LEN].strip("_")
    return key


def dedupe_strings(values: Iterable[Any] | None) -> list[str]:
    """Trim, drop empties and keep first occurrence order."""
    out: list[str] = []
    seen: set[str] = set()
    for v in values or []:
        s = str(v).strip() if v is not None else ""
        if not s or s in seen:
            continue
        seen.add(s)
        out.append(s)
    return out


def dedupe_uuids(values: Iterable[UUID | None]) -> list[UUID]:
    out: list[UUID] = []
    seen: set[UUID] = set()
    for v in values or []:
        if v is None or v.int == 0 or v in seen:
            continue
        seen.add(v)
        out.append(v)
    return out


def shorten(s: str, max_len: int) -> str:
    s = (s or "").strip()
    if max_len <= 0 or len(s) <= max_len:
        return s
    return s[:max_len] + "..."


def hash_string(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def canonical_json(obj: Any) -> str:
    """JSON with sorted keys and no insignificant whitespace."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def format_rfc3339_nano(dt: datetime | None) -> str:
    """UTC timestamp with trailing fractional zeros trimmed (``...05.12Z``)."""
    if dt is None:
        return ""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    base = dt.strftime("%Y-%m-%dT%H:%M:%S")
    if dt.microsecond:
        base += ("." + f"{dt.microsecond:06d}").rstrip("0")
    return base + "Z"


def clamp01(v: float) -> float:
    if v < 0:
        return 0.0
    if v > 1:
        return 1.0
    return float(v)


def word_count(text: str) -> int:
    return len((text or "").split())


def tokenize(text: str, min_len: int = 2) -> list[str]:
    """Lowercase alphanumeric tokens of at least ``min_len`` chars, deduped."""
    return dedupe_strings(t for t in _TOKEN_RE.findall((text or "").lower()) if len(t) >= min_len)


# ========================================
# Loose JSON coercion
# ========================================


def string_from_any(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, str):
        return v
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, (int, float)):
        return str(v)
    return ""


def string_list_from_any(v: Any) -> list[str]:
    if v is None:
        return []
    if isinstance(v, str):
        return [v] if v.strip() else []
    if isinstance(v, (list, tuple)):
        return [s for s in (string_from_any(x).strip() for x in v) if s]
    return []


def int_from_any(v: Any, default: int = 0) -> int:
    if v is None or isinstance(v, bool):
        return default
    if isinstance(v, int):
        return v
    if isinstance(v, float):
        return int(v) if math.isfinite(v) else default
    if isinstance(v, str):
        try:
            return int(float(v.strip()))
        except ValueError:
            return default
    return default


def float_from_any(v: Any, default: float = 0.0) -> float:
    if v is None or isinstance(v, bool):
        return default
    if isinstance(v, (int, float)):
        return float(v) if math.isfinite(float(v)) else default
    if isinstance(v, str):
        try:
            return float(v.strip())
        except ValueError:
            return default
    return default


def bool_from_any(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(v, (int, float)):
        return v != 0
    return False


def map_from_any(v: Any) -> dict[str, Any]:
    return v if isinstance(v, dict) else {}


def parse_uuid(v: Any) -> UUID | None:
    if isinstance(v, UUID):
        return v if v.int else None
    try:
        u = UUID(str(v).strip())
    except (ValueError, AttributeError, TypeError):
        return None
    return u if u.int else None


def uuids_from_strings(values: Iterable[Any]) -> list[UUID]:
    return dedupe_uuids(u for u in (parse_uuid(v) for v in values or []) if u is not None)


# ========================================
# Chunks & citations
# ========================================


def chunk_meta(chunk: Any) -> dict[str, Any]:
    meta = getattr(chunk, "meta", None)
    return meta if isinstance(meta, dict) else {}


def is_unextractable_chunk(chunk: Any) -> bool:
    """Flagged by the extractor as non-textual (e.g. image-only page)."""
    if chunk is None:
        return True
    if string_from_any(chunk_meta(chunk).get("kind")).strip().lower() == "unextractable":
        return True
    return (getattr(chunk, "text", "") or "").strip().lower().startswith("no extractable ")


def filter_chunk_id_strings(values: Iterable[Any], allowed: set[str] | None) -> list[str]:
    """Keep parseable chunk IDs present in ``allowed`` (when non-empty), deduped."""
    out: list[str] = []
    seen: set[str] = set()
    for v in values or []:
        u = parse_uuid(v)
        if u is None:
            continue
        s = str(u)
        if allowed and s not in allowed:
            continue
        if s in seen:
            continue
        seen.add(s)
        out.append(s)
    return out


def fallback_concept_keys_for_node(title: str, goal: str, concepts: Iterable[Any], max_keys: int = 8) -> list[str]:
    """
    Infer concept keys for a path node that lacks ``concept_keys``.

    Scores each concept against the node title + goal: a name phrase match is
    worth 6, a key phrase match 3 and each shared token 1. When nothing scores,
    falls back to the highest-ranked concepts by sort_index.
    """
    if max_keys <= 0:
        max_keys = 8
    max_keys = min(max_keys, 25)
    text = f"{title or ''} {goal or ''}".strip().lower()
    text_tokens = set(tokenize(text))
    key_text = normalize_concept_key(text)

    scored: list[tuple[int, int, str]] = []
    fallback: list[tuple[int, str]] = []
    for c in concepts or []:
        key = (getattr(c, "key", "") or "").strip().lower()
        if not key:
            continue
        sort_index = int(getattr(c, "sort_index", 0) or 0)
        fallback.append((sort_index, key))
        name = (getattr(c, "name", "") or "").strip().lower()
        score = 0
        if name and name in text:
            score += 6
        if key and (key in key_text or key.replace("_", " ") in text):
            score += 3
        score += len(text_tokens & set(tokenize(f"{key.replace('_', ' ')} {name}")))
        if score > 0:
            scored.append((score, sort_index, key))

    if scored:
        scored.sort(key=lambda t: (-t[0], -t[1], t[2]))
        return dedupe_strings(k for _, _, k in scored)[:max_keys]
    fallback.sort(key=lambda t: (-t[0], t[1]))
    return dedupe_strings(k for _, k in fallback)[:max_keys]
