"""
Centralized SQL Queries for the pipeline.

Raw SQL that doesn't map cleanly onto ORM queries: corpus signal counts,
full-text chunk search, graph expansion, soft-delete restore and
insert-or-ignore writes.

Usage:
    from src.db.queries import QUERIES

    result = session.execute(text(QUERIES["count_chunks"]), params)
"""

from __future__ import annotations

# =============================================================================
# ADAPTIVE SIGNALS
# =============================================================================

# Files in a material set, with the fields used for content-type detection
GET_SIGNAL_FILES = """
    SELECT id, original_name, mime_type, extracted_kind
    FROM material_files
    WHERE material_set_id = :set_id
"""

COUNT_CHUNKS = """
    SELECT count(*)
    FROM material_chunks
    WHERE material_file_id = ANY(:file_ids)
"""

COUNT_DISTINCT_PAGES = """
    SELECT count(DISTINCT page)
    FROM material_chunks
    WHERE material_file_id = ANY(:file_ids)
      AND page IS NOT NULL
"""

COUNT_DISTINCT_SECTIONS = """
    SELECT count(DISTINCT metadata->>'section_path')
    FROM material_chunks
    WHERE material_file_id = ANY(:file_ids)
      AND COALESCE(metadata->>'section_path', '') <> ''
"""

COUNT_PATH_CONCEPTS = """
    SELECT count(*)
    FROM concepts
    WHERE scope = 'path'
      AND scope_id = :path_id
      AND deleted_at IS NULL
"""

COUNT_PATH_EDGES = """
    SELECT count(*)
    FROM concept_edges e
    JOIN concepts c ON c.id = e.from_concept_id
    WHERE c.scope = 'path'
      AND c.scope_id = :path_id
      AND e.deleted_at IS NULL
"""

COUNT_PATH_NODES = """
    SELECT count(*)
    FROM path_nodes
    WHERE path_id = :path_id
"""

# =============================================================================
# RETRIEVAL
# =============================================================================

# Full-text chunk search restricted to a file set
LEXICAL_CHUNK_SEARCH = """
    SELECT id
    FROM material_chunks
    WHERE material_file_id = ANY(:file_ids)
      AND to_tsvector('english', text) @@ plainto_tsquery('english', :query)
    ORDER BY ts_rank(to_tsvector('english', text), plainto_tsquery('english', :query)) DESC, id
    LIMIT :limit
"""

# Evidence rows for seed chunks (chunk -> concept hop)
SEED_CHUNK_EVIDENCE = """
    SELECT ev.concept_id, ev.material_chunk_id, ev.weight
    FROM concept_evidences ev
    WHERE ev.material_chunk_id = ANY(:chunk_ids)
      AND ev.deleted_at IS NULL
"""

# Edges touching a set of concepts (one-hop concept expansion)
EDGES_TOUCHING_CONCEPTS = """
    SELECT from_concept_id, to_concept_id, edge_type, strength
    FROM concept_edges
    WHERE (from_concept_id = ANY(:concept_ids) OR to_concept_id = ANY(:concept_ids))
      AND deleted_at IS NULL
"""

# Evidence chunks for a set of concepts, restricted to the material set
# (and to an optional file allowlist)
EVIDENCE_CHUNKS_FOR_CONCEPTS = """
    SELECT ev.concept_id, ev.material_chunk_id, ev.weight
    FROM concept_evidences ev
    JOIN material_chunks mc ON mc.id = ev.material_chunk_id
    JOIN material_files mf ON mf.id = mc.material_file_id
    WHERE mf.material_set_id = :set_id
      AND ev.concept_id = ANY(:concept_ids)
      AND ev.deleted_at IS NULL
      AND (cardinality(CAST(:file_ids AS uuid[])) = 0 OR mf.id = ANY(:file_ids))
"""

# =============================================================================
# CONCEPT GRAPH WRITES
# =============================================================================

INSERT_EVIDENCE_IGNORE = """
    INSERT INTO concept_evidences (id, concept_id, material_chunk_id, kind, weight, created_at, updated_at)
    VALUES (:id, :concept_id, :chunk_id, :kind, :weight, now(), now())
    ON CONFLICT (concept_id, material_chunk_id) DO NOTHING
"""

UPSERT_EDGE = """
    INSERT INTO concept_edges (id, from_concept_id, to_concept_id, edge_type, strength, evidence, created_at, updated_at)
    VALUES (:id, :from_id, :to_id, :edge_type, :strength, CAST(:evidence AS jsonb), now(), now())
    ON CONFLICT (from_concept_id, to_concept_id, edge_type) DO UPDATE
    SET strength = EXCLUDED.strength,
        evidence = EXCLUDED.evidence,
        deleted_at = NULL,
        updated_at = now()
"""

INSERT_GLOBAL_CONCEPT_IGNORE = """
    INSERT INTO concepts (id, scope, scope_id, key, name, summary, key_points, depth, sort_index,
                          vector_id, metadata, canonical_concept_id, created_at, updated_at)
    VALUES (:id, 'global', NULL, :key, :name, :summary, CAST(:key_points AS jsonb), 0, 0,
            :vector_id, CAST(:metadata AS jsonb), :canonical_id, now(), now())
    ON CONFLICT DO NOTHING
"""

# Soft-delete restore after a unique violation on reinsert
RESTORE_PATH_CONCEPTS = """
    UPDATE concepts
    SET deleted_at = NULL, updated_at = now()
    WHERE scope = 'path' AND scope_id = :path_id AND deleted_at IS NOT NULL
"""

RESTORE_PATH_EVIDENCES = """
    UPDATE concept_evidences
    SET deleted_at = NULL, updated_at = now()
    WHERE deleted_at IS NOT NULL
      AND concept_id IN (SELECT id FROM concepts WHERE scope = 'path' AND scope_id = :path_id)
"""

RESTORE_PATH_EDGES = """
    UPDATE concept_edges
    SET deleted_at = NULL, updated_at = now()
    WHERE deleted_at IS NOT NULL
      AND from_concept_id IN (SELECT id FROM concepts WHERE scope = 'path' AND scope_id = :path_id)
"""

# =============================================================================
# SAGA
# =============================================================================

LOCK_SAGA_RUN = """
    SELECT id FROM saga_runs WHERE id = :saga_id FOR UPDATE
"""

NEXT_SAGA_SEQ = """
    SELECT COALESCE(MAX(seq), 0) + 1 FROM saga_actions WHERE saga_id = :saga_id
"""

# =============================================================================
# QUERY REGISTRY
# =============================================================================

QUERIES = {
    # Adaptive signals
    "signal_files": GET_SIGNAL_FILES,
    "count_chunks": COUNT_CHUNKS,
    "count_pages": COUNT_DISTINCT_PAGES,
    "count_sections": COUNT_DISTINCT_SECTIONS,
    "count_path_concepts": COUNT_PATH_CONCEPTS,
    "count_path_edges": COUNT_PATH_EDGES,
    "count_path_nodes": COUNT_PATH_NODES,

    # Retrieval
    "lexical_chunks": LEXICAL_CHUNK_SEARCH,
    "seed_chunk_evidence": SEED_CHUNK_EVIDENCE,
    "edges_touching_concepts": EDGES_TOUCHING_CONCEPTS,
    "evidence_for_concepts": EVIDENCE_CHUNKS_FOR_CONCEPTS,

    # Concept graph writes
    "insert_evidence_ignore": INSERT_EVIDENCE_IGNORE,
    "upsert_edge": UPSERT_EDGE,
    "insert_global_concept_ignore": INSERT_GLOBAL_CONCEPT_IGNORE,
    "restore_path_concepts": RESTORE_PATH_CONCEPTS,
    "restore_path_evidences": RESTORE_PATH_EVIDENCES,
    "restore_path_edges": RESTORE_PATH_EDGES,

    # Saga
    "lock_saga": LOCK_SAGA_RUN,
    "next_saga_seq": NEXT_SAGA_SEQ,
}
