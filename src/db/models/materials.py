"""
Material models: uploaded sets, their files, extracted chunks and per-file signatures.

Chunks and files are produced upstream by ingestion and extraction. The pipeline
stages only read them, except for formula metadata written back by the concept
graph builder.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, DateTime, ForeignKey, Integer, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class MaterialSet(Base):
    """One learning bundle uploaded by a user."""

    __tablename__ = "material_sets"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    owner_user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(Text, default="pending")
    # Derived sets share the chunk namespace of the upload batch they came from.
    source_material_set_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now())

    files: Mapped[list[MaterialFile]] = relationship(back_populates="material_set")


class MaterialFile(Base):
    """An uploaded file; status moves pending -> uploaded -> extracted | failed."""

    __tablename__ = "material_files"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    material_set_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_sets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    original_name: Mapped[str] = mapped_column(Text, default="")
    mime_type: Mapped[str] = mapped_column(Text, default="")
    size_bytes: Mapped[int] = mapped_column(BigInteger, default=0)
    storage_key: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(Text, default="pending")
    extracted_kind: Mapped[str] = mapped_column(Text, default="")
    extracted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    extraction_diagnostics: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now())

    material_set: Mapped[MaterialSet] = relationship(back_populates="files")


class MaterialChunk(Base):
    """A contiguous passage of extracted text; the unit of retrieval and citation."""

    __tablename__ = "material_chunks"
    __table_args__ = (UniqueConstraint("material_file_id", "index", name="uq_material_chunks_file_index"),)

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    material_file_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_files.id", ondelete="CASCADE"), nullable=False, index=True
    )
    index: Mapped[int] = mapped_column(Integer, nullable=False)
    page: Mapped[int | None] = mapped_column(Integer)
    text: Mapped[str] = mapped_column(Text, default="")
    # JSON float list; empty/null until the embed stage runs
    embedding: Mapped[Any | None] = mapped_column(JSONB)
    # section_path, section_depth, formula_latex[], formula_symbolic[], table_json, provider, kind
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONB)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now())


class MaterialFileSignature(Base):
    """Per-file summary: seed concept keys, extraction quality and outline."""

    __tablename__ = "material_file_signatures"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    material_file_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_files.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    material_set_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    fingerprint: Mapped[str] = mapped_column(Text, default="")
    concept_keys: Mapped[list[str] | None] = mapped_column(JSONB)
    # {text_quality: high|medium|low, coverage: 0..1}
    quality: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    outline_json: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now())
