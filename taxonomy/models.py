"""Core SQLAlchemy models (2.x style) for the taxonomy schema.

Categories are seeded once at bootstrap; keywords, subkeywords, document
terms and evidence evolve through reconciliation and migrations.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# Column length of keyword and subkeyword ids
ENTITY_ID_LENGTH = 255


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class Category(Base):
    """Fixed top-level taxonomy categories."""
    __tablename__ = "taxonomy_categories"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    # Set when a migration leaves the category in a state that fails the integrity check
    integrity_hold: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    hold_reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)

    # Relationships
    keywords: Mapped[list[Keyword]] = relationship("Keyword", back_populates="category")


class Keyword(Base):
    """Keywords belong to exactly one category."""
    __tablename__ = "taxonomy_keywords"

    id: Mapped[str] = mapped_column(String(ENTITY_ID_LENGTH), primary_key=True)
    category_id: Mapped[str] = mapped_column(
        ForeignKey("taxonomy_categories.id"),
        nullable=False,
        index=True,
    )
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    synonyms: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    description: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="review", index=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)

    # Relationships
    category: Mapped[Category] = relationship("Category", back_populates="keywords")
    subkeywords: Mapped[list[Subkeyword]] = relationship("Subkeyword", back_populates="keyword")

    __table_args__ = (
        Index("ix_taxonomy_keywords_category_label", "category_id", "label"),
    )


class Subkeyword(Base):
    """Subkeywords hang off one parent keyword (keyword_id is authoritative)."""
    __tablename__ = "taxonomy_subkeywords"

    id: Mapped[str] = mapped_column(String(ENTITY_ID_LENGTH), primary_key=True)
    keyword_id: Mapped[str] = mapped_column(
        ForeignKey("taxonomy_keywords.id"),
        nullable=False,
        index=True,
    )
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    synonyms: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    description: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="review", index=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)

    # Relationship
    keyword: Mapped[Keyword] = relationship("Keyword", back_populates="subkeywords")


class DocumentTerm(Base):
    """Document ↔ keyword (and optional subkeyword) associations."""
    __tablename__ = "document_terms"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    document_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    keyword_id: Mapped[str] = mapped_column(ForeignKey("taxonomy_keywords.id"), nullable=False, index=True)
    subkeyword_id: Mapped[str | None] = mapped_column(ForeignKey("taxonomy_subkeywords.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index(
            "ux_document_terms_doc_keyword_subkeyword",
            "document_id",
            "keyword_id",
            "subkeyword_id",
            unique=True,
        ),
        # NULLs are distinct in a composite unique index, so keyword-level tags need their own
        Index(
            "ux_document_terms_doc_keyword_level",
            "document_id",
            "keyword_id",
            unique=True,
            postgresql_where=text("subkeyword_id IS NULL"),
            sqlite_where=text("subkeyword_id IS NULL"),
        ),
    )


class DocumentTermEvidence(Base):
    """Supporting excerpts for document terms; follows the term through migrations."""
    __tablename__ = "document_term_evidence"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    document_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    keyword_id: Mapped[str] = mapped_column(ForeignKey("taxonomy_keywords.id"), nullable=False, index=True)
    subkeyword_id: Mapped[str | None] = mapped_column(ForeignKey("taxonomy_subkeywords.id"), index=True)
    snippet: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_document_term_evidence_doc_keyword", "document_id", "keyword_id"),
    )


class MigrationRun(Base):
    """Audit trail of administrative split/merge migrations."""
    __tablename__ = "taxonomy_migration_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    category_id: Mapped[str] = mapped_column(ForeignKey("taxonomy_categories.id"), nullable=False, index=True)
    mode: Mapped[str] = mapped_column(String(16), nullable=False)  # split, merge
    params: Mapped[dict] = mapped_column(JSON, nullable=False)
    stats: Mapped[dict | None] = mapped_column(JSON)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    violations: Mapped[list | None] = mapped_column(JSON)
    started_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column()
