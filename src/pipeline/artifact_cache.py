"""
Artifact cache for stage outputs.

A stage computes a deterministic fingerprint of everything that can change
its output (files, chunks, signatures, allowlist, intent, relevant env) and
compares it with the stored row for (owner, set, path, artifact_type). A
matching hash means the stage already produced this output.

Example:
    >>> payload = {"files": files_fingerprint(files), "chunks": chunks_fingerprint(chunks)}
    >>> input_hash = compute_artifact_hash("concept_graph_build", set_id, path_id, payload)
    >>> hit = artifact_cache_get(session, owner, set_id, path_id, "concept_graph", input_hash)
"""

from __future__ import annotations

import os
from collections.abc import Iterable, Mapping
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from src.db.models import LearningArtifact
from src.db.repositories import ArtifactRepository
from src.pipeline.primitives import canonical_json, chunk_meta, format_rfc3339_nano, hash_string, string_from_any

ARTIFACT_HASH_VERSION = 1

_SENSITIVE_MARKERS = ("KEY", "SECRET", "TOKEN", "PASSWORD")


def artifact_cache_enabled() -> bool:
    return get_settings().learning_artifact_cache_enabled


def compute_artifact_hash(
    stage: str, material_set_id: UUID | None, path_id: UUID | None, payload: Mapping[str, Any]
) -> str:
    """SHA-256 over the canonical JSON of the stage envelope and payload."""
    envelope = {
        "stage": stage,
        "version": ARTIFACT_HASH_VERSION,
        "material_set_id": str(material_set_id) if material_set_id else "",
        "path_id": str(path_id) if path_id else "",
        "payload": payload,
    }
    return hash_string(canonical_json(envelope))


def env_snapshot(
    prefixes: Iterable[str],
    allow_keys: Iterable[str] = (),
    environ: Mapping[str, str] | None = None,
) -> dict[str, str] | None:
    """
    Environment variables that influence a stage, for hashing.

    Keys that look sensitive (contain KEY/SECRET/TOKEN/PASSWORD) and empty
    values are skipped. Returns None when nothing matches.
    """
    environ = os.environ if environ is None else environ
    prefixes = [p for p in prefixes if p]
    allow = {k for k in allow_keys if k}
    out: dict[str, str] = {}
    for key, value in environ.items():
        upper = key.upper()
        if any(marker in upper for marker in _SENSITIVE_MARKERS):
            continue
        if not value or not value.strip():
            continue
        if key in allow or any(key.startswith(p) for p in prefixes):
            out[key] = value.strip()
    if not out:
        return None
    return dict(sorted(out.items()))


# ========================================
# Input fingerprints
# ========================================


def files_fingerprint(files: Iterable[Any]) -> list[dict[str, Any]]:
    out = [
        {
            "id": str(f.id),
            "updated_at": format_rfc3339_nano(f.updated_at),
            "extracted_at": format_rfc3339_nano(f.extracted_at),
            "size_bytes": int(f.size_bytes or 0),
            "mime_type": f.mime_type or "",
            "storage_key": f.storage_key or "",
            "extracted_kind": f.extracted_kind or "",
            "status": f.status or "",
        }
        for f in files or []
        if f is not None
    ]
    out.sort(key=lambda r: r["id"])
    return out


def chunks_fingerprint(chunks: Iterable[Any]) -> list[dict[str, Any]]:
    out = []
    for ch in chunks or []:
        if ch is None:
            continue
        meta = chunk_meta(ch)
        out.append(
            {
                "id": str(ch.id),
                "file_id": str(ch.material_file_id),
                "updated_at": format_rfc3339_nano(ch.updated_at),
                "index": int(ch.index or 0),
                "page": int(ch.page) if ch.page is not None else 0,
                "kind": string_from_any(meta.get("kind")),
                "provider": string_from_any(meta.get("provider")),
            }
        )
    out.sort(key=lambda r: r["id"])
    return out


def signatures_fingerprint(signatures: Iterable[Any]) -> list[dict[str, Any]]:
    out = [
        {
            "file_id": str(s.material_file_id),
            "updated_at": format_rfc3339_nano(s.updated_at),
            "version": int(s.version or 0),
            "fingerprint": s.fingerprint or "",
        }
        for s in signatures or []
        if s is not None
    ]
    out.sort(key=lambda r: r["file_id"])
    return out


def concepts_fingerprint(concepts: Iterable[Any]) -> list[dict[str, Any]]:
    out = [
        {"id": str(c.id), "key": c.key, "updated_at": format_rfc3339_nano(c.updated_at)}
        for c in concepts or []
        if c is not None
    ]
    out.sort(key=lambda r: r["key"])
    return out


def sorted_id_strings(ids: Iterable[UUID | str]) -> list[str]:
    return sorted({str(i) for i in ids or [] if i})


def normalize_hash_text(text: str | None) -> str:
    """Free text as hashed: surrounding whitespace stripped and inner runs collapsed to one space."""
    return " ".join((text or "").split())


# ========================================
# Repository access
# ========================================


def artifact_cache_get(
    session: Session,
    owner_user_id: UUID,
    material_set_id: UUID,
    path_id: UUID,
    artifact_type: str,
    input_hash: str,
) -> tuple[LearningArtifact | None, bool]:
    """Return (row, hit); a hit needs a non-empty stored hash equal to ``input_hash``."""
    if not input_hash:
        return None, False
    row = ArtifactRepository(session).get_by_key(owner_user_id, material_set_id, path_id, artifact_type)
    if row is None:
        return None, False
    return row, bool(row.input_hash) and row.input_hash == input_hash


def artifact_cache_upsert(
    session: Session,
    owner_user_id: UUID,
    material_set_id: UUID,
    path_id: UUID,
    artifact_type: str,
    input_hash: str,
    meta: dict[str, Any] | None = None,
) -> bool:
    """Best-effort cache write. Returns False (and logs) on failure."""
    if not input_hash:
        return False
    try:
        with session.begin_nested():
            ArtifactRepository(session).upsert(
                owner_user_id, material_set_id, path_id, artifact_type, input_hash, ARTIFACT_HASH_VERSION, meta
            )
    except SQLAlchemyError as e:
        logger.warning(f"Artifact cache upsert failed for {artifact_type} (path {path_id}): {e}")
        return False
    return True
